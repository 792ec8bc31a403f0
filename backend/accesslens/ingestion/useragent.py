import re
from functools import lru_cache

from user_agents import parse as ua_parse

from accesslens.schemas import UAInfo

# scripted HTTP clients the parser reports as ordinary "Other" browsers
CLIENT_PATTERN = re.compile(
    r"(?i)^(?:curl|wget|python|java/|go-http|node-fetch|axios|okhttp|libwww|apache-httpclient)"
)

# fold mobile and embedded variants into the desktop family name
BROWSER_FAMILIES = {
    "Mobile Safari": "Safari",
    "Mobile Safari UI/WKWebView": "Safari",
    "Chrome Mobile": "Chrome",
    "Chrome Mobile iOS": "Chrome",
    "Chrome Mobile WebView": "Chrome",
    "Firefox Mobile": "Firefox",
    "Firefox iOS": "Firefox",
    "Edge Mobile": "Edge",
    "Opera Mobile": "Opera",
}

OS_FAMILIES = {
    "Mac OS X": "macOS",
}


class UserAgentParser:
    """User agent classification backed by the user-agents library."""

    def parse(self, user_agent: str) -> UAInfo:
        if not user_agent:
            return UAInfo()
        return _parse_cached(user_agent).model_copy()


def _family(name: str, aliases) -> str:
    if not name or name == "Other":
        return "Unknown"
    if name.startswith("Windows"):
        return "Windows"
    return aliases.get(name, name)


@lru_cache(maxsize=4096)
def _parse_cached(user_agent: str) -> UAInfo:
    ua = ua_parse(user_agent)
    info = UAInfo(
        browser=_family(ua.browser.family, BROWSER_FAMILIES),
        browser_version=ua.browser.version_string or "",
        os=_family(ua.os.family, OS_FAMILIES),
        os_version=ua.os.version_string or "",
    )

    if ua.is_bot or CLIENT_PATTERN.search(user_agent):
        info.is_bot = True
        info.device_type = "bot"
    elif ua.is_tablet:
        info.device_type = "tablet"
    elif ua.is_mobile:
        info.device_type = "mobile"
    return info
