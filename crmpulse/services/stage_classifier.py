"""
Deal stage classification into won / lost / open.

Precedence, first match wins:
1. stage name contains a lost marker -> lost
2. with a stage definition:
   closed and probability > 0 -> won
   closed and probability == 0 -> lost
   won marker in the name -> won
3. without a definition: won or paid marker in the name -> won
4. otherwise open (None)
"""
from typing import Optional

from crmpulse.models.records import StageDefinition

WON = "won"
LOST = "lost"

LOST_MARKERS = ("perdido", "lost")
WON_MARKERS = ("ganado", "matriculado", "won")
# Only trusted when the portal gives us no definition to check against
PAID_MARKERS = ("pagado",)


def classify_stage(name: str, definition: Optional[StageDefinition] = None) -> Optional[str]:
    """
    Classify a stage by display name and, when available, its definition.

    Returns:
        "won", "lost" or None for open stages
    """
    name_lower = (name or "").lower()

    if any(marker in name_lower for marker in LOST_MARKERS):
        return LOST

    if definition is not None:
        if definition.is_closed:
            return WON if definition.probability > 0 else LOST
        if any(marker in name_lower for marker in WON_MARKERS):
            return WON
        return None

    if any(marker in name_lower for marker in WON_MARKERS + PAID_MARKERS):
        return WON
    return None
