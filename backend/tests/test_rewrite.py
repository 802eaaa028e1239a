import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from webp_delivery.cache import cache_key
from webp_delivery.capability import ClientCapability
from webp_delivery.main import create_app
from webp_delivery.rewrite import HtmlRewriter, should_rewrite

WEBP_ACCEPT = {"Accept": "text/html,image/webp,*/*"}


@pytest.fixture
def rewriter(fake_store):
    return HtmlRewriter(fake_store, upload_base_url="https://example.com/uploads", cache_base_url="/webp-cache")


@pytest.fixture
def converted(fake_store, make_jpeg):
    source = make_jpeg("2024/01/photo.jpg")
    fake_store.ensure(source)
    return "2024/01/photo.jpg"


def _doc(body: str) -> str:
    return f"<!DOCTYPE html><html lang=\"en\"><head></head><body>{body}</body></html>"


def test_wraps_converted_image(rewriter, converted):
    tag = '<img class="hero" src="https://example.com/uploads/2024/01/photo.jpg" alt="A photo" loading="lazy">'
    out = rewriter.rewrite(_doc(tag))
    expected = (
        f'<picture><source srcset="/webp-cache/{cache_key(converted)}.webp" type="image/webp">'
        f"{tag}</picture>"
    )
    assert expected in out


def test_leaves_unconverted_image_alone(rewriter, fake_engine, make_jpeg):
    make_jpeg("2024/01/other.jpg")
    html = _doc('<img src="https://example.com/uploads/2024/01/other.jpg">')
    assert rewriter.rewrite(html) == html
    assert fake_engine.calls == 0


def test_requires_html_document(rewriter, converted):
    fragment = '<img src="https://example.com/uploads/2024/01/photo.jpg">'
    assert rewriter.rewrite(fragment) == fragment


def test_no_matching_tags_is_identity(rewriter, converted):
    html = _doc("<p>No images here</p><img src=\"https://cdn.example.net/2024/01/photo.jpg\">")
    assert rewriter.rewrite(html) == html


def test_single_quotes_and_mixed_tags(rewriter, converted):
    converted_tag = "<IMG width=10 SRC='https://example.com/uploads/2024/01/photo.jpg'/>"
    missing_tag = '<img src="https://example.com/uploads/2024/01/missing.png">'
    out = rewriter.rewrite(_doc(converted_tag + missing_tag))
    assert f"<picture><source srcset=\"/webp-cache/{cache_key(converted)}.webp\" type=\"image/webp\">{converted_tag}</picture>" in out
    assert missing_tag in out
    assert out.count("<picture>") == 1


def test_data_src_is_not_a_src(rewriter, converted):
    html = _doc('<img data-src="https://example.com/uploads/2024/01/photo.jpg" alt="x">')
    assert rewriter.rewrite(html) == html


def test_traversal_in_src_is_ignored(rewriter, converted):
    html = _doc('<img src="https://example.com/uploads/../secret/photo.jpg">')
    assert rewriter.rewrite(html) == html


def _request(path="/", method="GET", headers=None):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({
        "type": "http",
        "method": method,
        "scheme": "http",
        "server": ("testserver", 80),
        "path": path,
        "root_path": "",
        "query_string": b"",
        "headers": raw,
    })


@pytest.mark.parametrize(
    "path, method, headers, capable, expected",
    [
        ("/", "GET", {}, True, True),
        ("/", "GET", {}, False, False),
        ("/", "POST", {}, True, False),
        ("/api/bulk/progress", "GET", {}, True, False),
        ("/admin", "GET", {}, True, False),
        ("/administrator-guide.html", "GET", {}, True, True),
        ("/", "GET", {"X-Requested-With": "XMLHttpRequest"}, True, False),
        ("/", "GET", {"X-Scheduled-Task": "1"}, True, False),
    ],
)
def test_should_rewrite(path, method, headers, capable, expected):
    request = _request(path, method, headers)
    assert should_rewrite(request, ClientCapability(accepts_webp=capable), ["/api", "/admin"]) is expected


@pytest.fixture
def site(tmp_path):
    site_dir = tmp_path / "site"
    site_dir.mkdir()
    (site_dir / "index.html").write_text(
        _doc('<h1>Gallery</h1><img src="/uploads/2024/01/photo.jpg" alt="photo">'), encoding="utf-8"
    )
    return site_dir


def test_middleware_rewrites_pages(fake_store, converted, site):
    client = TestClient(create_app(store=fake_store, site_dir=site))
    resp = client.get("/", headers=WEBP_ACCEPT)
    assert resp.status_code == 200
    assert f'<source srcset="/webp-cache/{cache_key(converted)}.webp" type="image/webp">' in resp.text
    assert int(resp.headers["content-length"]) == len(resp.content)


def test_middleware_skips_incapable_and_ajax(fake_store, converted, site):
    plain = TestClient(create_app(store=fake_store, site_dir=site))
    resp = plain.get("/", headers={"Accept": "text/html", "User-Agent": "curl/8.0"})
    assert "<picture>" not in resp.text

    ajax = TestClient(create_app(store=fake_store, site_dir=site))
    resp = ajax.get("/", headers={**WEBP_ACCEPT, "X-Requested-With": "XMLHttpRequest"})
    assert "<picture>" not in resp.text


def test_rewritten_page_gets_its_own_validator(fake_store, make_jpeg, site):
    client = TestClient(create_app(store=fake_store, site_dir=site))
    before = client.get("/", headers=WEBP_ACCEPT)
    assert "<picture>" not in before.text
    assert "last-modified" not in before.headers
    stale_etag = before.headers["etag"]

    fake_store.ensure(make_jpeg("2024/01/photo.jpg"))

    after = client.get("/", headers={**WEBP_ACCEPT, "If-None-Match": stale_etag})
    assert after.status_code == 200
    assert "<picture>" in after.text
    assert after.headers["etag"] != stale_etag

    again = client.get("/", headers={**WEBP_ACCEPT, "If-None-Match": after.headers["etag"]})
    assert again.status_code == 304
    assert again.content == b""
    assert again.headers["etag"] == after.headers["etag"]
