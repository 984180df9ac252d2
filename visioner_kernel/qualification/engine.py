"""
Qualification Engine — decides whether present concealment or cover is the
*kind* that satisfies a stealth action (Hide, Sneak, ...).

Geometry is the caller's concern: this engine assumes concealment or cover
exists and only judges eligibility.

Behavioral Contract:
- Absence of qualification data is permissive (can-use defaults to true)
- Any relevant explicit "false" denies (deny wins over allow)
- Custom messages from every consulted source are concatenated, never deduplicated
- Pure read: nothing here writes to the ledger or flags
"""

import logging
from typing import Any, Dict, List, Optional, Union

from visioner_kernel.ledger.store import SourceLedger, source_qualifies
from visioner_kernel.models.results import (
    HidePrerequisites,
    SneakPrerequisites,
    SourceQualificationCheck,
)
from visioner_kernel.models.source import QualificationRecord, Source
from visioner_kernel.models.states import StateType, enum_value
from visioner_kernel.scene.store import FlagStore, SceneStore

logger = logging.getLogger(__name__)

QUALIFICATIONS_FLAG = "actionQualifications"

Carrier = Union[Source, QualificationRecord]


class QualificationEngine:
    """Judges action eligibility from ledger sources and qualification records."""

    def __init__(self, ledger: SourceLedger, flags: FlagStore, scene: SceneStore):
        self.ledger = ledger
        self.flags = flags
        self.scene = scene

    # --- Carriers ---

    def get_qualification_records(
        self,
        token_id: str,
        counterpart_id: Optional[str] = None,
    ) -> List[QualificationRecord]:
        """
        Records stored on the token. With a counterpart, range-limited
        records only count when the counterpart is within range.
        """
        raw: Dict[str, Any] = self.flags.get_flag(token_id, QUALIFICATIONS_FLAG, {}) or {}
        records = [QualificationRecord.model_validate(r) for r in raw.values()]
        if counterpart_id is None:
            return records

        token = self.scene.get_token(token_id)
        counterpart = self.scene.get_token(counterpart_id)
        if token is None or counterpart is None:
            return [r for r in records if r.range is None]
        distance = self.scene.distance(token, counterpart)
        return [r for r in records if r.range is None or distance <= r.range]

    def _carriers(self, token_id: str, state_type: str) -> List[Carrier]:
        carriers: List[Carrier] = list(self.ledger.get_all_sources(token_id, state_type))
        carriers.extend(self.get_qualification_records(token_id))
        return carriers

    def _allowed(self, carriers: List[Carrier], action: str, attr: str, source_id: Optional[str] = None) -> bool:
        """Deny wins across the channel unless a carrier with source_id speaks for itself."""
        if source_id is not None:
            for carrier in carriers:
                qualification = carrier.qualifications.get(action)
                if carrier.id == source_id and qualification is not None:
                    return getattr(qualification, attr) is not False
        return not self._vetoed(carriers, action, attr)

    def _vetoed(self, carriers: List[Carrier], action: str, attr: str) -> bool:
        for carrier in carriers:
            qualification = carrier.qualifications.get(action)
            if qualification is not None and getattr(qualification, attr) is False:
                return True
        return False

    def _granted(self, carriers: List[Carrier], action: str, attrs: List[str]) -> bool:
        for carrier in carriers:
            qualification = carrier.qualifications.get(action)
            if qualification is None:
                continue
            if any(getattr(qualification, attr) is True for attr in attrs):
                return True
        return False

    # --- Capability checks ---

    def can_use_concealment(self, token_id: str, action: str, source_id: Optional[str] = None) -> bool:
        carriers = self._carriers(token_id, StateType.VISIBILITY.value)
        return self._allowed(carriers, action, "can_use_this_concealment", source_id)

    def can_use_cover(self, token_id: str, action: str, source_id: Optional[str] = None) -> bool:
        carriers = self._carriers(token_id, StateType.COVER.value)
        return self._allowed(carriers, action, "can_use_this_cover", source_id)

    def start_position_qualifies(self, token_id: str, action: str = "sneak") -> bool:
        return not self._vetoed(self._all_carriers(token_id), action, "start_position_qualifies")

    def end_position_qualifies(self, token_id: str, action: str = "sneak") -> bool:
        return not self._vetoed(self._all_carriers(token_id), action, "end_position_qualifies")

    def ignore_concealment(self, token_id: str, action: str, counterpart_id: Optional[str] = None) -> bool:
        records = self.get_qualification_records(token_id, counterpart_id)
        return self._granted(records, action, ["ignore_concealment", "ignore_this_concealment"])

    def ignore_cover(self, token_id: str, action: str, counterpart_id: Optional[str] = None) -> bool:
        records = self.get_qualification_records(token_id, counterpart_id)
        return self._granted(records, action, ["ignore_this_cover"])

    def get_custom_messages(self, token_id: str, action: str) -> List[str]:
        return SourceLedger.get_custom_messages(self._all_carriers(token_id), action)

    def _all_carriers(self, token_id: str) -> List[Carrier]:
        carriers: List[Carrier] = list(self.ledger.get_all_sources(token_id))
        carriers.extend(self.get_qualification_records(token_id))
        return carriers

    # --- Prerequisites ---

    def check_hide_prerequisites(self, token_id: str, action: str = "hide") -> HidePrerequisites:
        """
        Hide is possible when a qualifying concealment or cover source
        exists. A token with no sources at all is left to geometry. One
        disqualifying carrier rules out its whole channel.
        """
        concealment = self.ledger.get_all_sources(token_id, StateType.VISIBILITY.value)
        cover = self.ledger.get_all_sources(token_id, StateType.COVER.value)
        if not concealment and not cover:
            return HidePrerequisites(can_hide=True)

        records = self.get_qualification_records(token_id)
        qualifying_concealment = self._qualifying(
            concealment, records, action, StateType.VISIBILITY.value, "can_use_this_concealment",
        )
        qualifying_cover = self._qualifying(cover, records, action, StateType.COVER.value, "can_use_this_cover")

        carriers: List[Carrier] = [*concealment, *cover, *records]
        can_hide = qualifying_concealment > 0 or qualifying_cover > 0
        logger.debug(
            "Hide check for %s: concealment %d/%d, cover %d/%d",
            token_id, qualifying_concealment, len(concealment), qualifying_cover, len(cover),
        )
        return HidePrerequisites(
            can_hide=can_hide,
            qualifying_concealment=qualifying_concealment,
            qualifying_cover=qualifying_cover,
            messages=SourceLedger.get_custom_messages(carriers, action),
        )

    def _qualifying(
        self,
        sources: List[Source],
        records: List[QualificationRecord],
        action: str,
        state_type: str,
        attr: str,
    ) -> int:
        if self._vetoed([*sources, *records], action, attr):
            return 0
        return sum(1 for source in sources if source_qualifies(source, action, state_type))

    def check_sneak_prerequisites(self, token_id: str, position: str, action: str = "sneak") -> SneakPrerequisites:
        if position == "start":
            qualifies = self.start_position_qualifies(token_id, action)
        elif position == "end":
            qualifies = self.end_position_qualifies(token_id, action)
        else:
            raise ValueError(f"Unknown sneak position: {position}")
        return SneakPrerequisites(
            qualifies=qualifies,
            messages=self.get_custom_messages(token_id, action),
        )

    def check_source_qualifications(self, token_id: str, action: str, state_type: str) -> SourceQualificationCheck:
        state_type = enum_value(state_type)
        sources = self.ledger.get_all_sources(token_id, state_type)
        qualifying = [s for s in sources if source_qualifies(s, action, state_type)]
        return SourceQualificationCheck(
            qualifies=not sources or bool(qualifying),
            messages=SourceLedger.get_custom_messages(sources, action),
            total_sources=len(sources),
            qualifying_sources=len(qualifying),
        )

    # --- Host qualification records ---

    def apply_hide_qualification(self, token_id: str, qualification: Dict[str, Any]) -> Dict[str, Any]:
        """
        Fold the Hide verdict into a host position-qualification record
        ({startQualifies, endQualifies, bothQualify, reason}).
        """
        result = dict(qualification)
        check = self.check_hide_prerequisites(token_id)
        if check.messages:
            result["ruleElementMessages"] = list(check.messages)
        if not check.can_hide:
            result["endQualifies"] = False
            result["bothQualify"] = False
            result["reason"] = check.messages[0] if check.messages else "No qualifying concealment or cover"
        return result

    def apply_sneak_qualification(self, token_id: str, qualification: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(qualification)
        start = self.start_position_qualifies(token_id) and result.get("startQualifies", True)
        end = self.end_position_qualifies(token_id) and result.get("endQualifies", True)
        result["startQualifies"] = start
        result["endQualifies"] = end
        result["bothQualify"] = start and end

        messages = self.get_custom_messages(token_id, "sneak")
        if messages:
            result["ruleElementMessages"] = messages
        if not (start and end) and messages:
            result["reason"] = messages[0]
        return result
