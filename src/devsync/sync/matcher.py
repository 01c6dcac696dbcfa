"""Device matcher - joins Intune and Defender inventories.

The join key is the Azure AD device id. Every input device lands in exactly
one output record:

- Intune device with a Defender counterpart -> ``matched``
- Intune device without one (or without a key) -> ``only_intune``
- Defender device nobody matched -> ``only_defender``

When two Intune devices share a key that exists in Defender, the later one
replaces the earlier one in the single ``matched`` record for that key, and
the earlier device is not emitted anywhere.
"""

import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Iterable, Sequence

from devsync.models import DefenderDevice, ManagedDevice, SyncRecord, SyncState
from devsync.utils.logging import get_logger

logger = get_logger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


def sync_timestamp_now() -> str:
    """ISO-8601 UTC timestamp shared by every record of one run."""
    return datetime.now(timezone.utc).isoformat()


def match_devices(
    intune_devices: Sequence[ManagedDevice],
    defender_devices: Sequence[DefenderDevice],
    sync_timestamp: str | None = None,
) -> list[SyncRecord]:
    """Cross-match two device inventories into sync records."""
    timestamp = sync_timestamp or sync_timestamp_now()
    records: list[SyncRecord] = []

    # Step 1: index Defender devices by key; keyless ones go straight to only_defender
    defender_by_key: dict[str, DefenderDevice] = {}
    defender_without_key: list[DefenderDevice] = []

    for defender in defender_devices:
        key = defender.identity_key
        if key is None:
            defender_without_key.append(defender)
            continue
        if key in defender_by_key:
            logger.warning(
                f"Duplicate aadDeviceId {key} in Defender inventory "
                f"({defender_by_key[key].id} replaced by {defender.id})"
            )
        defender_by_key[key] = defender

    logger.debug(
        f"Indexed Defender devices: {len(defender_by_key)} with key, "
        f"{len(defender_without_key)} without"
    )

    # Step 2: walk Intune devices
    consumed: set[str] = set()
    matched_at: dict[str, int] = {}

    for intune in intune_devices:
        key = intune.identity_key
        if key is None:
            logger.warning(
                f"Intune device {intune.id} ({intune.device_name}) has no azureADDeviceId"
            )
            records.append(SyncRecord(
                id=_new_id(),
                sync_key=intune.id,
                sync_state=SyncState.ONLY_INTUNE,
                sync_timestamp=timestamp,
                intune=intune,
            ))
            continue

        defender = defender_by_key.get(key)
        if defender is None:
            records.append(SyncRecord(
                id=_new_id(),
                sync_key=key,
                sync_state=SyncState.ONLY_INTUNE,
                sync_timestamp=timestamp,
                intune=intune,
            ))
            continue

        record = SyncRecord(
            id=_new_id(),
            sync_key=key,
            sync_state=SyncState.MATCHED,
            sync_timestamp=timestamp,
            intune=intune,
            defender=defender,
        )
        if key in matched_at:
            # Last match wins; the earlier Intune device drops out
            previous = records[matched_at[key]]
            logger.warning(
                f"Intune devices {previous.intune.id} and {intune.id} share "
                f"azureADDeviceId {key}; keeping {intune.id}"
            )
            records[matched_at[key]] = record
        else:
            matched_at[key] = len(records)
            records.append(record)
        consumed.add(key)

    # Step 3: keyed Defender devices nobody claimed
    for key, defender in defender_by_key.items():
        if key in consumed:
            continue
        records.append(SyncRecord(
            id=_new_id(),
            sync_key=key,
            sync_state=SyncState.ONLY_DEFENDER,
            sync_timestamp=timestamp,
            defender=defender,
        ))

    # Step 4: keyless Defender devices get a generated key
    for defender in defender_without_key:
        records.append(SyncRecord(
            id=_new_id(),
            sync_key=_new_id(),
            sync_state=SyncState.ONLY_DEFENDER,
            sync_timestamp=timestamp,
            defender=defender,
        ))

    counts = count_by_state(records)
    logger.info(
        f"Matched {len(records)} records: "
        f"{counts[SyncState.MATCHED]} matched, "
        f"{counts[SyncState.ONLY_INTUNE]} only Intune, "
        f"{counts[SyncState.ONLY_DEFENDER]} only Defender"
    )
    return records


def count_by_state(records: Iterable[SyncRecord]) -> dict[SyncState, int]:
    """Tally records per sync state (every state present, zero if unused)."""
    tally = Counter(record.sync_state for record in records)
    return {state: tally.get(state, 0) for state in SyncState}
