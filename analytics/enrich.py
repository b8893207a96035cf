import hashlib
import hmac
import ipaddress
import logging
import os

import geoip2.database
import geoip2.errors

from . import config

logger = logging.getLogger(__name__)

geoip_reader = None
geoip_reader_path = None


def get_geoip_reader(path: str | None = None):
    """
    Open the MaxMind City database once. Returns None when the file is missing;
    that result is kept too, the path is only checked again when it changes.
    """
    global geoip_reader, geoip_reader_path
    path = path or config.GEOIP_DB_PATH
    if geoip_reader_path != path:
        if os.path.exists(path):
            geoip_reader = geoip2.database.Reader(path)
            logger.info("GeoIP database loaded from %s", path)
        else:
            logger.warning("GeoIP database not found at %s", path)
            geoip_reader = None
        geoip_reader_path = path
    return geoip_reader


def lookup_geo(raw_ip: str, path: str | None = None) -> dict | None:
    """
    City/country for an IP, or None if it can't be resolved (no database,
    private or unknown address). None means "no enrichment", never an error.
    """
    reader = get_geoip_reader(path)
    if reader is None or not raw_ip:
        return None
    try:
        resp = reader.city(raw_ip)
    except (geoip2.errors.AddressNotFoundError, ValueError):
        return None
    return {
        "city": resp.city.name,
        "country": resp.country.name,
        "country_code": resp.country.iso_code,
    }


# -----------------------------------------------------------------------------
# Request metadata
# -----------------------------------------------------------------------------
def client_ip(req) -> str | None:
    """
    Left-most X-Forwarded-For entry (the original client behind the ingress),
    falling back to the socket peer.
    """
    forwarded = req.headers.get("X-Forwarded-For", "")
    first = forwarded.split(",")[0].strip()
    return first or req.remote_addr


def is_private_ip(raw_ip: str | None) -> bool:
    if not raw_ip:
        return False
    try:
        ip_obj = ipaddress.ip_address(raw_ip)
    except ValueError:
        return False
    return ip_obj.is_private or ip_obj.is_loopback


def anonymize_ip(raw_ip: str, salt: str) -> str:
    """
    Bucket/truncate IP then HMAC with secret salt.
    Returns something like "v4:abcd1234..." or "v6:abcd1234...".
    """
    try:
        ip_obj = ipaddress.ip_address(raw_ip)
    except ValueError:
        return "invalid"

    if isinstance(ip_obj, ipaddress.IPv4Address):
        octets = raw_ip.split(".")
        truncated = f"{octets[0]}.{octets[1]}.0.0"
        version = "v4"
    else:
        # IPv6: keep ~top /32 bits
        mask = (2**128 - 1) ^ (2**96 - 1)
        truncated = ipaddress.IPv6Address(int(ip_obj) & mask).exploded
        version = "v6"

    digest = hmac.new(salt.encode("utf-8"), truncated.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{version}:{digest[:16]}"


def parse_user_agent(ua: str) -> dict:
    """
    Rough browser / OS / device classification (coarse on purpose).
    """
    ua_lower = (ua or "").lower()

    # browser
    if "firefox" in ua_lower and "seamonkey" not in ua_lower:
        browser = "Firefox"
    elif "edg" in ua_lower:
        browser = "Edge"
    elif "opr/" in ua_lower or "opera" in ua_lower:
        browser = "Opera"
    elif "chromium" in ua_lower:
        browser = "Chromium"
    elif "chrome" in ua_lower or "crios" in ua_lower:
        browser = "Chrome"
    elif "safari" in ua_lower:
        browser = "Safari"
    else:
        browser = "Other"

    # OS
    if "windows" in ua_lower:
        os_name = "Windows"
    elif "iphone" in ua_lower or "ipad" in ua_lower or "ipod" in ua_lower:
        os_name = "iOS"
    elif "android" in ua_lower:
        os_name = "Android"
    elif "mac os x" in ua_lower or "macintosh" in ua_lower:
        os_name = "macOS"
    elif "linux" in ua_lower:
        os_name = "Linux"
    else:
        os_name = "Other"

    # device
    if "ipad" in ua_lower or "tablet" in ua_lower or ("android" in ua_lower and "mobile" not in ua_lower):
        device = "tablet"
    elif "mobi" in ua_lower or "iphone" in ua_lower or "ipod" in ua_lower:
        device = "mobile"
    else:
        device = "desktop"

    return {"browser": browser, "os": os_name, "device": device}

