"""
Device Record Reconciliation

Folds partial records from several discovery sources into one record per
IP address.  Scalar fields are first-non-empty-wins; set fields are
unioned.  Because the first source to supply a field keeps it, the order
in which sources are passed *is* their priority.
"""

from typing import Dict, Iterable, List

from .device import SCALAR_FIELDS, SET_FIELDS, DiscoveredDevice


def merge_into(existing: DiscoveredDevice, incoming: DiscoveredDevice) -> DiscoveredDevice:
    """Fold ``incoming`` into ``existing`` in place and return ``existing``.

    ``existing`` must already be a private copy; ``incoming`` is only read.
    """
    for name in SCALAR_FIELDS:
        if not getattr(existing, name) and getattr(incoming, name):
            setattr(existing, name, getattr(incoming, name))
    for name in SET_FIELDS:
        getattr(existing, name).update(getattr(incoming, name))
    return existing


def merge_devices(*sources: Iterable[DiscoveredDevice]) -> List[DiscoveredDevice]:
    """
    Merge device lists, one per source, in priority order.

    Returns:
        One record per distinct ``ip_address``, ordered by first
        appearance.  Input records are never modified.
    """
    merged: Dict[str, DiscoveredDevice] = {}
    for source in sources:
        for device in source:
            current = merged.get(device.ip_address)
            if current is None:
                merged[device.ip_address] = device.copy()
            else:
                merge_into(current, device)
    return list(merged.values())
