from urllib.parse import parse_qsl, urljoin, urlsplit

# Query params that name a map layer take priority over the path.
LAYER_PARAMS = ("LAYERS", "layers", "layer")

def _first_param(query: str, name: str) -> str | None:
    for k, v in parse_qsl(query, keep_blank_values=True):
        if k == name:
            return v
    return None

def _is_malformed(raw: str) -> bool:
    return any(ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in raw)

def resolve_endpoint_key(raw_id: str, base: str | None = None) -> str:
    """
    Derive the grouping key for a request id (absolute or relative URL).

    Order: first non-empty LAYERS / layers / layer query value, then the last
    non-empty path segment, then the host name. Anything that cannot be parsed
    comes back unchanged.
    """
    if not isinstance(raw_id, str) or not raw_id or _is_malformed(raw_id):
        return raw_id
    try:
        u = urlsplit(urljoin(base, raw_id) if base else raw_id)
        u.port  # raises ValueError for an invalid port
    except ValueError:
        return raw_id

    for name in LAYER_PARAMS:
        value = _first_param(u.query, name)
        if value:
            return value

    parts = [p for p in u.path.split("/") if p]
    if parts:
        return parts[-1]
    if u.hostname:
        return u.hostname
    return raw_id
