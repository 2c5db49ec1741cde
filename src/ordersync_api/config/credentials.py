"""
Carrier credential loading.

Credentials come from a numbered environment pattern:

    CARRIER_API_KEY_1=...            access key (required)
    CARRIER_API_KEY_1_NAME=...       display name
    CARRIER_API_KEY_1_STORES=a,b     stores this key is authoritative for
    CARRIER_API_KEY_1_SLUG=maystro   carrier variant (default maystro)
    CARRIER_API_KEY_1_ACCOUNT=...    account id (Yalidine API id, NOEST user guid)
    CARRIER_API_KEY_1_BASE_URL=...   overrides CARRIER_BASE_URL

A legacy single CARRIER_API_KEY (with CARRIER_API_KEY_STORES) is loaded as
credential "primary" at priority 0 and always wins the primary flag.
"""

import os
import re
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from ordersync_api.core.logger import setup_logger

logger = setup_logger(__name__)

LEGACY_KEY = "CARRIER_API_KEY"
NUMBERED_KEY_PATTERN = re.compile(r"^CARRIER_API_KEY_(\d+)$")
DEFAULT_SLUG = "maystro"


@dataclass
class CarrierCredential:
    """One carrier access key and the stores it speaks for."""
    credential_id: str
    secret_key: str
    slug: str = DEFAULT_SLUG
    name: Optional[str] = None
    account_id: Optional[str] = None
    base_url: Optional[str] = None
    stores: List[str] = field(default_factory=list)
    priority: int = 0
    is_primary: bool = False
    is_active: bool = True


def _split_stores(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [store.strip() for store in raw.split(",") if store.strip()]


def load_carrier_credentials(environ: Optional[Mapping[str, str]] = None) -> List[CarrierCredential]:
    """
    Build the carrier credential list from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Credentials sorted by priority index
    """
    env = os.environ if environ is None else environ
    shared_base_url = env.get("CARRIER_BASE_URL") or None
    credentials: List[CarrierCredential] = []

    legacy_key = env.get(LEGACY_KEY)
    if legacy_key:
        credentials.append(CarrierCredential(
            credential_id="primary",
            secret_key=legacy_key,
            slug=env.get(f"{LEGACY_KEY}_SLUG", DEFAULT_SLUG),
            name=env.get(f"{LEGACY_KEY}_NAME", "Primary"),
            account_id=env.get(f"{LEGACY_KEY}_ACCOUNT") or None,
            base_url=env.get(f"{LEGACY_KEY}_BASE_URL") or shared_base_url,
            stores=_split_stores(env.get(f"{LEGACY_KEY}_STORES")),
            priority=0,
            is_primary=True,
        ))

    indexes = sorted(
        int(match.group(1))
        for match in (NUMBERED_KEY_PATTERN.match(name) for name in env)
        if match
    )
    for index in indexes:
        prefix = f"{LEGACY_KEY}_{index}"
        secret = env.get(prefix, "").strip()
        if not secret:
            logger.warning(f"Skipping {prefix}: empty key")
            continue
        credentials.append(CarrierCredential(
            credential_id=f"key_{index}",
            secret_key=secret,
            slug=env.get(f"{prefix}_SLUG", DEFAULT_SLUG),
            name=env.get(f"{prefix}_NAME", f"Key {index}"),
            account_id=env.get(f"{prefix}_ACCOUNT") or None,
            base_url=env.get(f"{prefix}_BASE_URL") or shared_base_url,
            stores=_split_stores(env.get(f"{prefix}_STORES")),
            priority=index,
        ))

    if credentials and not any(c.is_primary for c in credentials):
        credentials[0].is_primary = True

    logger.info(f"Loaded {len(credentials)} carrier credential(s)")
    return sorted(credentials, key=lambda c: c.priority)
