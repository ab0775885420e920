"""
Outbound HTML instrumentation tests - pixel placement, link wrapping, idempotence.
"""
from urllib.parse import parse_qs, urlsplit

import pytest

from src.services.link_tracking import LinkInstrumenter

TOKEN = "tok123"


class TestOpenPixel:
    def test_appends_invisible_pixel(self, instrumenter):
        html = instrumenter.add_open_pixel("<p>Hi</p>", TOKEN)
        assert html.startswith("<p>Hi</p>")
        assert 'src="https://tracking.example.com/pixel/tok123"' in html
        assert 'width="1" height="1"' in html
        assert "display:none" in html

    def test_empty_body(self, instrumenter):
        html = instrumenter.add_open_pixel("", TOKEN)
        assert html.startswith("<img")

    def test_custom_scheme(self):
        instrumenter = LinkInstrumenter("localhost:8000/", scheme="http")
        assert instrumenter.pixel_url("t") == "http://localhost:8000/pixel/t"


class TestWrapLinks:
    def test_wraps_http_link_and_encodes_target(self, instrumenter):
        html = '<a href="https://example.com/pricing?plan=pro&ref=mail">Pricing</a>'
        wrapped = instrumenter.wrap_links(html, TOKEN)

        href = wrapped.split('href="')[1].split('"')[0]
        parts = urlsplit(href)
        assert parts.netloc == "tracking.example.com"
        assert parts.path == "/redirect/tok123"
        assert parse_qs(parts.query)["url"] == ["https://example.com/pricing?plan=pro&ref=mail"]
        assert wrapped.endswith(">Pricing</a>")

    def test_preserves_other_attributes(self, instrumenter):
        html = '<a class="btn" href="http://example.com" target="_blank" style="color:red">Go</a>'
        wrapped = instrumenter.wrap_links(html, TOKEN)
        assert wrapped.startswith('<a class="btn" href="https://tracking.example.com/redirect/tok123?url=')
        assert 'target="_blank" style="color:red">Go</a>' in wrapped

    def test_single_quoted_href(self, instrumenter):
        wrapped = instrumenter.wrap_links("<a href='https://example.com'>x</a>", TOKEN)
        assert "href='https://tracking.example.com/redirect/tok123?url=https%3A%2F%2Fexample.com'" in wrapped

    def test_apostrophe_inside_double_quoted_href(self, instrumenter):
        wrapped = instrumenter.wrap_links("<a href=\"https://x.com/o'neil\">Profile</a>", TOKEN)
        href = wrapped.split('href="')[1].split('"')[0]
        assert parse_qs(urlsplit(href).query)["url"] == ["https://x.com/o'neil"]
        assert wrapped.endswith(">Profile</a>")

    def test_double_quote_inside_single_quoted_href(self, instrumenter):
        wrapped = instrumenter.wrap_links("<a href='https://x.com/say\"hi\"'>x</a>", TOKEN)
        assert wrapped.startswith("<a href='https://tracking.example.com/redirect/tok123?url=")
        assert "%22hi%22" in wrapped

    def test_wraps_every_link(self, instrumenter):
        html = '<a href="https://a.com">a</a> text <A HREF="https://b.com">b</A>'
        wrapped = instrumenter.wrap_links(html, TOKEN)
        assert wrapped.count("/redirect/tok123") == 2

    @pytest.mark.parametrize(
        "html",
        [
            '<a href="mailto:sales@example.com">Mail</a>',
            '<a href="tel:+15125550100">Call</a>',
            '<a href="javascript:alert(1)">x</a>',
            '<a href="#section">Jump</a>',
            '<a href="/relative/path">Rel</a>',
            '<a name="anchor">No href</a>',
            '<a href=https://unquoted.example.com>Unquoted</a>',
            '<a href="">Empty</a>',
        ],
    )
    def test_non_navigable_links_untouched(self, instrumenter, html):
        assert instrumenter.wrap_links(html, TOKEN) == html

    def test_already_tracked_link_untouched(self, instrumenter):
        html = '<a href="https://tracking.example.com/redirect/other?url=x">x</a>'
        assert instrumenter.wrap_links(html, TOKEN) == html

    def test_idempotent(self, instrumenter):
        html = (
            '<p>Hello</p><a href="https://example.com/a">A</a>'
            '<a href="mailto:x@example.com">m</a><a href=\'http://b.example.com\'>B</a>'
        )
        once = instrumenter.wrap_links(html, TOKEN)
        assert instrumenter.wrap_links(once, TOKEN) == once

    def test_empty_html(self, instrumenter):
        assert instrumenter.wrap_links("", TOKEN) == ""
        assert instrumenter.wrap_links(None, TOKEN) == ""


class TestInstrument:
    def test_pixel_and_links(self, instrumenter):
        html = instrumenter.instrument('<a href="https://example.com">x</a>', TOKEN)
        assert "/pixel/tok123" in html
        assert "/redirect/tok123?url=" in html

    def test_pixel_not_wrapped(self, instrumenter):
        html = instrumenter.instrument("<p>no links</p>", TOKEN)
        assert "/redirect/" not in html
        assert html.count("<img") == 1

    def test_instrumented_output_is_stable_under_rewrap(self, instrumenter):
        html = instrumenter.instrument('<a href="https://example.com">x</a>', TOKEN)
        assert instrumenter.wrap_links(html, TOKEN) == html
