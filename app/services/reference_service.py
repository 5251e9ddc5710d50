"""External reference helpers.

The reference sent to the provider at checkout has the shape
`SUB-{user_id}-{product_id}-{hash}`. The provider echoes it back on
payments and preapprovals, but not always the one we generated: the
provider-side reference may carry a different hash or a prefixed product
token (`p73`). These helpers build references and pull the identity back
out of them so the matcher can fall back to (user, product).
"""

import hashlib
import re

PREFIX = "SUB-"
HASH_LENGTH = 8

_PRODUCT_TOKEN = re.compile(r"^p(\d+)$")


def generate_external_reference(user_id, product_id, nonce):
    """Build a reference. nonce makes it unique per checkout (subscription id)."""
    digest = hashlib.sha256(
        f"{user_id}:{product_id}:{nonce}".encode("utf-8")
    ).hexdigest()[:HASH_LENGTH]
    return f"{PREFIX}{user_id}-{product_id}-{digest}"


def normalize_product_id(token):
    """'p73' -> '73'. Anything else is returned unchanged."""
    if token is None:
        return None
    token = str(token)
    match = _PRODUCT_TOKEN.match(token)
    return match.group(1) if match else token


def parse_external_reference(reference):
    """Return {"user_id", "product_id", "hash"} or None if unparseable.

    User ids may themselves contain hyphens (UUIDs), so the product and
    hash are split off the right-hand end.
    """
    if not reference or not reference.startswith(PREFIX):
        return None

    parts = reference[len(PREFIX):].rsplit("-", 2)
    if len(parts) != 3 or not all(parts):
        return None

    user_id, product_token, digest = parts
    return {
        "user_id": user_id,
        "product_id": normalize_product_id(product_token),
        "hash": digest,
    }
