"""Partner registry — identities, secret keys and presence.

Public API: PartnerRegistry + schema types from schemas.py.
"""

from duo.partners.registry import PartnerRegistry, generate_secret_key
from duo.partners.schemas import PartnerDetail, PartnerStatus, PartnerSummary

__all__ = [
    "PartnerRegistry",
    "generate_secret_key",
    "PartnerDetail",
    "PartnerStatus",
    "PartnerSummary",
]
