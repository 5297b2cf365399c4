import pytest
from bs4 import BeautifulSoup

SEARCH_HTML = """
<html><body>
<ul id="bukken_list">
  <li>
    <a href="/bukken/1234/"><h2 class="entry-title">【新着】世田谷区桜新町1丁目（売主）</h2></a>
    <dl><dt>総額</dt><dd><span class="a1234">4,980</span>万円</dd></dl>
    <dl><dt>間取</dt><dd>3LDK</dd></dl>
    <dl><dt>土地面積</dt><dd>120.50㎡</dd></dl>
    <dl><dt>建物面積</dt><dd>98.12㎡</dd></dl>
    <dl><dt>新築年月</dt><dd>2005年3月</dd></dl>
    <ul class="facility"><li>駐車場</li><li>南向き</li></ul>
    <p class="recommend_txt">  駅まで徒歩5分  </p>
  </li>
  <li>
    <a href="https://www.shiawasehome-reuse.com/bukken/5678/">詳細</a>
    <dl><dt>住居表示</dt><dd>目黒区中町2丁目</dd></dl>
    <p>価格 1億2000万円 土地面積：1,127.42m² 4SLDK</p>
    <div class="archive_sold">SOLD</div>
  </li>
</ul>
<div class="nav-links">
  <a class="page-numbers" href="/?bukken=jsearch&amp;paged=2">2</a>
  <a class="page-numbers" href="/?bukken=jsearch&amp;paged=7">7</a>
</div>
</body></html>
"""

DETAIL_HTML = """
<html><head>
<meta name="keywords" content="中古戸建, 世田谷区">
<meta name="description" content="★駐車場2台★南向き">
</head><body>
<div class="detail_price">4,980万円</div>
<ul class="tag_list"><li>リフォーム済</li><li>駐車場2台</li></ul>
<div class="slick-track">
  <li><a href="#"><img src="https://img.example/1.jpg"></a></li>
  <li><a><img src="https://img.example/2.jpg"></a></li>
</div>
<div class="detail-comment">陽当たり良好<br>閑静な住宅街</div>
<div class="section detail-section bukken-outline"><table><tr><th>所在地</th><td>世田谷区</td></tr></table></div>
<iframe class="detail-googlemap" src="https://maps.google.com/maps?q=35.6329,139.6503&amp;z=16"></iframe>
</body></html>
"""

BARE_DETAIL_HTML = """
<html><body>
<div class="detail_price">4,980万円</div>
<div class="detail_sold">成約済</div>
</body></html>
"""

REMOVED_HTML = "<html><body><p>This listing is no longer available.</p></body></html>"


@pytest.fixture
def search_doc():
    return BeautifulSoup(SEARCH_HTML, "html.parser")


@pytest.fixture
def detail_doc():
    return BeautifulSoup(DETAIL_HTML, "html.parser")
