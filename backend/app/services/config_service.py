"""Camp configuration store - compiled-in defaults, runtime overrides and pinned keys"""
import logging
import re
from typing import Dict, FrozenSet, Mapping, Optional
from sqlalchemy.orm import Session

from app.core.errors import ConfigImmutable, InvalidConfigValue
from app.models.config_entry import ConfigEntry
from app.services.departure_policy import to_date
from app.services.event_log_service import (
    EventType, log_event, build_admin_payload
)

logger = logging.getLogger(__name__)
ops_logger = logging.getLogger("ops")

# Single source of truth for camp defaults. Values are strings, as stored.
CONFIG_DEFAULTS: Dict[str, str] = {
    # Camp identity
    "campName": "DeMentha",
    "year": "2026",

    # Burning Man dates (official event)
    "burningManStartDate": "2026-08-31",
    "burningManEndDate": "2026-09-06",

    # Camp operational dates
    "earliestArrival": "2026-08-26",
    "latestDeparture": "2026-09-09",

    # Leaving before this date requires ops approval
    "departureCutoff": "2026-09-06",

    # Reservation fee in cents (15000 = $150.00)
    "reservationFeeCents": "15000",

    # Capacity (0 = unlimited)
    "maxMembers": "70",

    # Feature flags
    "applicationsOpen": "true",
    "paymentsEnabled": "true",
    "allowlistEnabled": "false",
}

# Keys that always resolve to CONFIG_DEFAULTS regardless of stored rows
NON_OVERRIDABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({"reservationFeeCents"})

# Keys holding YYYY-MM-DD dates
DATE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    "burningManStartDate", "burningManEndDate", "earliestArrival", "latestDeparture", "departureCutoff",
})

_NON_NEGATIVE_INT = re.compile(r"^[0-9]+$")


def is_runtime_override_allowed(key: str) -> bool:
    return key not in NON_OVERRIDABLE_CONFIG_KEYS


def merge_config_values(
    defaults: Mapping[str, str],
    overrides: Mapping[str, str],
    pinned: FrozenSet[str] = NON_OVERRIDABLE_CONFIG_KEYS
) -> Dict[str, str]:
    """Resolve configuration: defaults, then overrides, then re-pin pinned keys

    Re-pinning runs on every merge so a stale override row for a pinned key
    can never leak through any read path.
    """
    merged = dict(defaults)
    merged.update(overrides)
    for key in pinned:
        if key in defaults:
            merged[key] = defaults[key]
    return merged


def parse_max_members(raw: str) -> int:
    """Parse the capacity cap; 0 means unlimited

    Raises:
        InvalidConfigValue: If raw is not a non-negative base-10 integer string
    """
    trimmed = raw.strip() if isinstance(raw, str) else ""
    if not _NON_NEGATIVE_INT.match(trimmed):
        raise InvalidConfigValue(
            f'Invalid maxMembers config value: "{raw}". Must be a non-negative integer.'
        )
    return int(trimmed)


def is_flag_enabled(value: Optional[str]) -> bool:
    """Boolean-like config flag: only "true" (case/whitespace-insensitive) is true"""
    if not value:
        return False
    return value.strip().lower() == "true"


# ============================================================================
# READS
# ============================================================================

def _load_overrides(db: Session) -> Dict[str, str]:
    return {row.key: row.value for row in db.query(ConfigEntry).all()}


def get_all_config(db: Session) -> Dict[str, str]:
    """Defaults overlaid with stored overrides, pinned keys re-pinned"""
    return merge_config_values(CONFIG_DEFAULTS, _load_overrides(db))


def get_config_value(key: str, db: Session) -> Optional[str]:
    """Stored override if overridable and present, else the default, else None"""
    if is_runtime_override_allowed(key):
        row = db.query(ConfigEntry).filter(ConfigEntry.key == key).first()
        if row is not None:
            return row.value
    return CONFIG_DEFAULTS.get(key)


def get_reservation_fee_cents(db: Session) -> int:
    """Reservation fee from the pinned default (never from client input)"""
    return int(get_all_config(db)["reservationFeeCents"])


def list_config_entries(db: Session) -> Dict:
    """Resolved config plus the raw override rows (for the ops console)"""
    rows = db.query(ConfigEntry).order_by(ConfigEntry.key).all()
    return {
        "config": get_all_config(db),
        "overrides": [{
            "key": row.key,
            "value": row.value,
            "description": row.description,
            "updated_by": row.updated_by,
            "updated_at": row.updated_at.isoformat() if row.updated_at else None,
            "pinned": not is_runtime_override_allowed(row.key),
        } for row in rows],
        "pinned_keys": sorted(NON_OVERRIDABLE_CONFIG_KEYS),
    }


# ============================================================================
# WRITES
# ============================================================================

def set_config(
    key: str,
    value: str,
    actor: str,
    db: Session,
    description: Optional[str] = None
) -> ConfigEntry:
    """Create or update a runtime override

    Raises:
        ConfigImmutable: If the key is pinned
        InvalidConfigValue: If a maxMembers or date value would not parse
    """
    if not is_runtime_override_allowed(key):
        ops_logger.warning(f"Refused override of pinned config key {key} by {actor}")
        raise ConfigImmutable(f'Config key "{key}" cannot be overridden at runtime')

    if key == "maxMembers":
        parse_max_members(value)
    elif key in DATE_CONFIG_KEYS:
        to_date(value)

    row = db.query(ConfigEntry).filter(ConfigEntry.key == key).first()
    previous = row.value if row else None
    if row:
        row.value = value
        row.description = description
        row.updated_by = actor
    else:
        row = ConfigEntry(key=key, value=value, description=description, updated_by=actor)
        db.add(row)

    log_event(
        db,
        EventType.CONFIG_UPDATED,
        build_admin_payload(EventType.CONFIG_UPDATED, actor, key=key, value=value, previous=previous),
        actor=actor,
        commit=False,
    )
    db.commit()
    db.refresh(row)
    ops_logger.info(f"Config {key} set to {value!r} by {actor} (was {previous!r})")
    return row


def delete_config(key: str, actor: str, db: Session) -> bool:
    """Remove an override row, reverting the key to its default

    Returns:
        True if a row was removed
    """
    row = db.query(ConfigEntry).filter(ConfigEntry.key == key).first()
    if not row:
        return False

    previous = row.value
    db.delete(row)
    log_event(
        db,
        EventType.CONFIG_DELETED,
        build_admin_payload(EventType.CONFIG_DELETED, actor, key=key, previous=previous),
        actor=actor,
        commit=False,
    )
    db.commit()
    ops_logger.info(f"Config override {key} removed by {actor} (was {previous!r})")
    return True
