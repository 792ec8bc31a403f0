import json
from datetime import datetime, timezone, timedelta

import pytest

from accesslens.config import settings
from accesslens.errors import ParseError
from accesslens.ingestion.parser import (
    LineParser, classify_referer, extract_referer_domain, hash_key, is_page_view, normalize_url,
)
from accesslens.ingestion.useragent import UserAgentParser

CHROME_UA = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
             "(KHTML, like Gecko) Chrome/120.0.6099.109 Safari/537.36")
IPHONE_UA = ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_1_2 like Mac OS X) AppleWebKit/605.1.15 "
             "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1")
IPAD_UA = ("Mozilla/5.0 (iPad; CPU OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
           "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1")
ANDROID_UA = ("Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 "
              "(KHTML, like Gecko) Chrome/119.0.0.0 Mobile Safari/537.36")
EDGE_UA = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
           "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.2210.61")
GOOGLEBOT_UA = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"
SOGOU_EXPLORER_UA = ("Mozilla/5.0 (Windows NT 10.0; WOW64) AppleWebKit/537.36 (KHTML, like Gecko) "
                     "Chrome/38.0.2125.122 Safari/537.36 SE 2.X MetaSr 1.0")


class TestLineParser:
    """Combined and JSON access log parsing"""

    def setup_method(self):
        settings.REPORT_TIMEZONE = "UTC"
        self.parser = LineParser()

    def test_combined_line(self):
        line = ('203.0.113.9 - alice [15/Jan/2025:10:20:30 +0800] "GET /products?id=7 HTTP/1.1" '
                '200 5120 "https://www.google.com/search?q=x" "' + CHROME_UA + '"')
        entry = self.parser.parse(line, "combined")

        assert entry.remote_addr == "203.0.113.9"
        assert entry.remote_user == "alice"
        assert entry.timestamp == datetime(2025, 1, 15, 10, 20, 30, tzinfo=timezone(timedelta(hours=8)))
        assert entry.method == "GET"
        assert entry.uri == "/products?id=7"
        assert entry.protocol == "HTTP/1.1"
        assert entry.status == 200
        assert entry.body_bytes_sent == 5120
        assert entry.http_referer == "https://www.google.com/search?q=x"
        assert entry.http_user_agent == CHROME_UA
        assert entry.host == "www.google.com"  # derived from the referer

    def test_combined_trailing_tokens(self):
        line = ('10.1.1.1 - - [15/Jan/2025:10:20:30 +0000] "POST /api/orders HTTP/2.0" 201 88 '
                '"-" "curl/8.0" 0.125 0.100 shop.example.com')
        entry = self.parser.parse(line)

        assert entry.request_time == pytest.approx(0.125)
        assert entry.upstream_time == pytest.approx(0.100)
        assert entry.host == "shop.example.com"
        assert entry.http_referer == ""
        assert entry.remote_user == ""

    def test_combined_dash_tokens_mean_zero(self):
        line = '10.1.1.1 - - [15/Jan/2025:10:20:30 +0000] "GET / HTTP/1.1" 304 - "-" "-" - -'
        entry = self.parser.parse(line)

        assert entry.body_bytes_sent == 0
        assert entry.request_time == 0.0
        assert entry.upstream_time == 0.0
        assert entry.http_user_agent == ""

    def test_combined_garbage_numbers_zero_only_that_field(self):
        line = ('10.1.1.1 - - [15/Jan/2025:10:20:30 +0000] "GET /x HTTP/1.1" '
                'inf 99999999999999999999999 "-" "-" nan 1e999')
        entry = self.parser.parse(line)

        assert entry.status == 0
        assert entry.body_bytes_sent == 0
        assert entry.request_time == 0.0
        assert entry.upstream_time == 0.0
        assert entry.uri == "/x"

        line = '10.1.1.1 - - [15/Jan/2025:10:20:30 +0000] "GET /x HTTP/1.1" 70000 -5 "-" "-"'
        entry = self.parser.parse(line)
        assert entry.status == 0
        assert entry.body_bytes_sent == 0

    def test_combined_time_without_offset_uses_report_zone(self):
        line = '10.1.1.1 - - [15/Jan/2025:10:20:30] "GET / HTTP/1.1" 200 1 "-" "-"'
        entry = self.parser.parse(line)

        assert entry.timestamp.utcoffset() == timedelta(0)
        assert entry.timestamp.replace(tzinfo=None) == datetime(2025, 1, 15, 10, 20, 30)

    def test_custom_format_uses_combined_grammar(self):
        line = '10.1.1.1 - - [15/Jan/2025:10:20:30 +0000] "GET /a HTTP/1.1" 200 1 "-" "-"'
        assert self.parser.parse(line, "custom").uri == "/a"

    def test_malformed_combined_line(self):
        with pytest.raises(ParseError):
            self.parser.parse("this is not an access log line")
        with pytest.raises(ParseError):
            self.parser.parse('10.1.1.1 - - [not a time] "GET / HTTP/1.1" 200 1 "-" "-"')

    def test_json_aliases(self):
        line = json.dumps({
            "@timestamp": "2025-01-15T10:20:30Z",
            "client_ip": "198.51.100.4",
            "request_method": "GET",
            "uri": "/docs/intro",
            "server_protocol": "HTTP/1.1",
            "status_code": "404",
            "bytes_sent": 77,
            "referer": "https://news.example.org/post",
            "user_agent": CHROME_UA,
            "upstream_response_time": "0.010, 0.020",
            "server_name": "docs.example.com",
            "ingress_name": "web",
            "service_name": "docs-svc",
            "pod_name": "docs-7f9c",
        })
        entry = self.parser.parse(line, "json")

        assert entry.timestamp == datetime(2025, 1, 15, 10, 20, 30, tzinfo=timezone.utc)
        assert entry.remote_addr == "198.51.100.4"
        assert (entry.method, entry.uri, entry.protocol) == ("GET", "/docs/intro", "HTTP/1.1")
        assert entry.request == "GET /docs/intro HTTP/1.1"
        assert entry.status == 404
        assert entry.body_bytes_sent == 77
        assert entry.upstream_time == pytest.approx(0.010)
        assert entry.host == "docs.example.com"
        assert entry.ingress_name == "web"
        assert entry.service_name == "docs-svc"
        assert entry.pod_name == "docs-7f9c"

    def test_json_forwarded_for_replaces_private_address(self):
        line = json.dumps({
            "time_local": "15/Jan/2025:10:20:30 +0000",
            "remote_addr": "10.0.0.12",
            "x_forwarded_for": "8.8.4.4, 10.0.0.1",
            "request": "GET /pricing HTTP/1.1",
            "status": 200,
        })
        entry = self.parser.parse(line, "json")
        assert entry.remote_addr == "8.8.4.4"
        assert entry.uri == "/pricing"

    def test_json_public_address_is_kept(self):
        line = json.dumps({
            "time": "2025-01-15 10:20:30",
            "remote_addr": "8.8.8.8",
            "http_x_forwarded_for": "1.1.1.1",
            "request": "GET / HTTP/1.1",
            "status": 200,
        })
        entry = self.parser.parse(line, "json")
        assert entry.remote_addr == "8.8.8.8"
        assert entry.timestamp.replace(tzinfo=None) == datetime(2025, 1, 15, 10, 20, 30)

    def test_json_epoch_times(self):
        seconds = self.parser.parse(json.dumps({"timestamp": 1736936430, "status": 200}), "json")
        millis = self.parser.parse(json.dumps({"timestamp": 1736936430000, "status": 200}), "json")
        assert seconds.timestamp == millis.timestamp
        assert seconds.timestamp == datetime(2025, 1, 15, 10, 20, 30, tzinfo=timezone.utc)

    def test_json_garbage_numbers_zero_only_that_field(self):
        line = json.dumps({"time": "2025-01-15T10:20:30+00:00", "status": "abc", "bytes": "lots",
                           "request": "GET /x HTTP/1.1"})
        entry = self.parser.parse(line, "json")
        assert entry.status == 0
        assert entry.body_bytes_sent == 0
        assert entry.uri == "/x"

    def test_json_without_time_is_rejected(self):
        with pytest.raises(ParseError):
            self.parser.parse(json.dumps({"status": 200}), "json")
        with pytest.raises(ParseError):
            self.parser.parse("{not json", "json")
        with pytest.raises(ParseError):
            self.parser.parse("[1, 2]", "json")

    def test_parse_lines_counts_dropped(self):
        lines = [
            '10.1.1.1 - - [15/Jan/2025:10:20:30 +0000] "GET / HTTP/1.1" 200 1 "-" "-"',
            "garbage",
            "",
            '10.1.1.2 - - [15/Jan/2025:10:20:31 +0000] "GET /b HTTP/1.1" 200 1 "-" "-"',
            "more garbage",
        ]
        result = self.parser.parse_lines(lines)
        assert len(result.entries) == 2
        assert result.dropped == 2
        assert [e.remote_addr for e in result.entries] == ["10.1.1.1", "10.1.1.2"]


class TestHelpers:
    def test_hash_key(self):
        assert hash_key("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        assert len(hash_key("/x" + "host")) == 64

    def test_normalize_url(self):
        assert normalize_url("/a/b?x=1&y=2") == "/a/b"
        assert normalize_url("/plain") == "/plain"
        assert normalize_url("") == ""

    def test_referer_domain_and_class(self):
        assert extract_referer_domain("https://www.baidu.com/s?wd=x") == "www.baidu.com"
        assert extract_referer_domain("-") == ""
        assert classify_referer("") == "direct"
        assert classify_referer("-") == "direct"
        assert classify_referer("https://www.google.com/") == "search"
        assert classify_referer("https://t.co/abc") == "other"
        assert classify_referer("https://m.facebook.com/story") == "social"
        assert classify_referer("https://blog.example.com/") == "other"

    def test_is_page_view(self):
        assert is_page_view("/", 200)
        assert is_page_view("/pricing?plan=pro", 302)
        assert not is_page_view("/static/app.js", 200)
        assert not is_page_view("/img/logo.PNG", 200)
        assert not is_page_view("/api/users", 200)
        assert not is_page_view("/v1/api/users", 200)
        assert not is_page_view("/health", 200)
        assert not is_page_view("/metrics", 200)
        assert not is_page_view("/missing", 404)
        assert not is_page_view("/continue", 100)


class TestUserAgentParser:
    def setup_method(self):
        self.parser = UserAgentParser()

    def test_desktop_chrome(self):
        info = self.parser.parse(CHROME_UA)
        assert info.browser == "Chrome"
        assert info.browser_version.startswith("120.0")
        assert info.os == "Windows"
        assert info.device_type == "desktop"
        assert not info.is_bot

    def test_edge_is_not_chrome(self):
        info = self.parser.parse(EDGE_UA)
        assert info.browser == "Edge"
        assert info.browser_version.startswith("120.0")

    def test_iphone(self):
        info = self.parser.parse(IPHONE_UA)
        assert info.browser == "Safari"
        assert (info.os, info.os_version) == ("iOS", "17.1.2")
        assert info.device_type == "mobile"

    def test_ipad_is_tablet(self):
        info = self.parser.parse(IPAD_UA)
        assert info.os == "iOS"
        assert info.device_type == "tablet"

    def test_android_phone(self):
        info = self.parser.parse(ANDROID_UA)
        assert info.browser == "Chrome"
        assert (info.os, info.os_version) == ("Android", "13")
        assert info.device_type == "mobile"

    def test_bots_and_scripted_clients(self):
        for ua in (GOOGLEBOT_UA, "curl/8.4.0", "python-requests/2.31", "Pingdom.com_bot_version_1.4"):
            info = self.parser.parse(ua)
            assert info.is_bot, ua
            assert info.device_type == "bot"

    def test_sogou_explorer_is_a_browser(self):
        info = self.parser.parse(SOGOU_EXPLORER_UA)
        assert not info.is_bot
        assert info.device_type == "desktop"
        assert info.os == "Windows"

    def test_empty_and_unknown(self):
        info = self.parser.parse("")
        assert (info.browser, info.os, info.device_type) == ("Unknown", "Unknown", "desktop")
        assert self.parser.parse("SomethingElse/1.0").browser == "Unknown"

    def test_results_are_independent_copies(self):
        first = self.parser.parse(CHROME_UA)
        first.browser = "Changed"
        assert self.parser.parse(CHROME_UA).browser == "Chrome"
