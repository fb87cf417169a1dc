"""
Derives the Ethnode instances a validator or plugin talks to from its configuration.
"""
from typing import List, Mapping
from urllib.parse import urlparse

ENDPOINT_LIST_KEY = "BEACON_NODE_URLS"
ENDPOINT_KEY = "BEACON_NODE_URL"
EXPLICIT_REFS_KEY = "ETHNODE_REFS"
HOST_SEPARATOR = "-"


def split_list(value: str) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def endpoint_urls(config: Mapping[str, str]) -> List[str]:
    """
    Upstream endpoint URLs, from the list key first and then the single-URL key.
    """
    urls = split_list(config.get(ENDPOINT_LIST_KEY, ""))
    single = (config.get(ENDPOINT_KEY) or "").strip()
    if single and single not in urls:
        urls.append(single)
    return urls


def ethnode_from_url(url: str) -> str:
    """
    Ethnode name inferred from an endpoint URL: the host up to its first "-".

    "http://ethnode1-grandine:5052" -> "ethnode1". A host without the separator
    is returned whole. Names that themselves contain "-" cannot be recovered;
    such deployments must set ETHNODE_REFS.
    """
    if "://" not in url:
        url = f"http://{url}"
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return host.split(HOST_SEPARATOR, 1)[0]


def referenced_ethnodes(config: Mapping[str, str]) -> List[str]:
    """
    Ethnode names a service is configured against, without duplicates, in
    configuration order. ETHNODE_REFS, when present, overrides URL inference.
    """
    explicit = split_list(config.get(EXPLICIT_REFS_KEY, ""))
    if explicit:
        candidates = explicit
    else:
        candidates = [ethnode_from_url(url) for url in endpoint_urls(config)]
    seen = []
    for name in candidates:
        if name and name not in seen:
            seen.append(name)
    return seen


def prune_ethnode(config: Mapping[str, str], ethnode: str) -> dict:
    """
    Returns the configuration updates that drop every reference to an Ethnode.
    Only keys that change are included; an empty value means "clear the key".
    """
    updates = {}
    urls = split_list(config.get(ENDPOINT_LIST_KEY, ""))
    kept = [u for u in urls if ethnode_from_url(u) != ethnode]
    if len(kept) != len(urls):
        updates[ENDPOINT_LIST_KEY] = ",".join(kept)

    single = (config.get(ENDPOINT_KEY) or "").strip()
    if single and ethnode_from_url(single) == ethnode:
        updates[ENDPOINT_KEY] = ""

    refs = split_list(config.get(EXPLICIT_REFS_KEY, ""))
    if ethnode in refs:
        updates[EXPLICIT_REFS_KEY] = ",".join(r for r in refs if r != ethnode)
    return updates
