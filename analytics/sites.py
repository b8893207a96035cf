from urllib.parse import urlparse


def _referer_host(referer: str) -> str | None:
    try:
        u = urlparse(referer)
        host = u.hostname
    except ValueError:
        return None
    if not u.scheme or not host:
        return None
    return host


def _strip_port(host: str) -> str:
    if host.startswith("["):
        # [::1]:3000
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    return host.split(":")[0]


def resolve_site_id(
    explicit_id: str | None = None,
    referer: str | None = None,
    host: str | None = None,
) -> str | None:
    """
    Work out which embedding site a visit belongs to.

    First match wins: explicit id, hostname of an absolute referer URL, the
    request's own Host header without port. None means the caller has to
    reject the request.
    """
    if explicit_id:
        return explicit_id

    if referer:
        referer_host = _referer_host(referer)
        if referer_host:
            return referer_host

    if host:
        return _strip_port(host) or None

    return None
