"""Servicing order of update packages.

Servicing-stack updates must be applied before cumulative updates, and
both before feature and other packages. Within a kind the configured
order is kept.
"""

from collections.abc import Iterable

from ffu_builder.buildconfig.schema import UpdatePackage
from ffu_builder.types import UpdateKind

SERVICING_ORDER = (
    UpdateKind.SERVICING_STACK,
    UpdateKind.CUMULATIVE,
    UpdateKind.FEATURE,
    UpdateKind.OTHER,
)


def order_updates(updates: Iterable[UpdatePackage]) -> list[UpdatePackage]:
    """Sort update packages into servicing order (stable within a kind)."""
    rank = {kind: i for i, kind in enumerate(SERVICING_ORDER)}
    return sorted(updates, key=lambda u: rank[u.effective_kind])


__all__ = ["SERVICING_ORDER", "order_updates"]
