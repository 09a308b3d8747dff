"""Tests for HTML-to-text extraction."""

from app.services.html_extract import html_to_text


def test_title_becomes_heading():
    html = "<html><head><title>Pricing</title></head><body><p>Plans start at $5.</p></body></html>"
    assert html_to_text(html) == "# Pricing\n\nPlans start at $5."


def test_main_region_preferred_over_chrome():
    html = """
    <html><head><title>Docs</title><style>p { color: red }</style></head>
    <body>
      <header>Site header</header>
      <nav><a href="/">Home</a></nav>
      <div>Cookie banner</div>
      <main><h1>Install</h1><p>Run the installer.</p></main>
      <aside>Related links</aside>
      <footer>Copyright</footer>
      <script>track()</script>
    </body></html>
    """
    text = html_to_text(html)
    assert text.startswith("# Docs")
    assert "Install" in text
    assert "Run the installer." in text
    for noise in ("Site header", "Home", "Cookie banner", "Related links", "Copyright", "track()", "color"):
        assert noise not in text


def test_role_main_is_recognised():
    html = '<body><div>outside</div><div role="main"><p>inside</p><div>nested</div></div></body>'
    text = html_to_text(html)
    assert "inside" in text
    assert "nested" in text
    assert "outside" not in text


def test_falls_back_to_body_without_main():
    html = "<body><header>Top</header><p>First</p><p>Second</p></body>"
    text = html_to_text(html)
    assert text == "First\n\nSecond"


def test_empty_page():
    assert html_to_text("<html><body><script>x()</script></body></html>") == ""
