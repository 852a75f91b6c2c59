from feedcore.url_utils import host_matches, normalize_url, url_host


def test_normalize_url_lowercases_host_and_drops_fragment_and_slash():
    url = "https://Example.com/Path/?utm=1#section"
    assert normalize_url(url) == "https://example.com/Path?utm=1"


def test_normalize_url_equivalent_forms_match():
    assert normalize_url("HTTPS://example.com:443/a/") == normalize_url("https://example.com/a")


def test_normalize_url_empty():
    assert normalize_url("") == ""


def test_url_host_strips_www():
    assert url_host("https://www.Reuters.com/world") == "reuters.com"
    assert url_host("") == ""


def test_host_matches_domain_and_subdomains():
    domains = ("bbc.co.uk", "npr.org")
    assert host_matches("https://feeds.bbc.co.uk/news/rss.xml", domains)
    assert host_matches("https://npr.org/rss", domains)
    assert not host_matches("https://notbbc.co.uk/rss", domains)
    assert not host_matches("", domains)
