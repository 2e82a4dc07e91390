"""AI-assisted matching: the service contract and the fallback adapter."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from openai import AsyncOpenAI, OpenAIError

from .config import AIConfig
from .discrepancy import percent_difference, reference_pair
from .errors import UpstreamError
from .heuristic import match_item
from .models import MATCH_NONE, TAKEOFF_MODE, BidLineItem, Item, MatchResult, normalise_mode
from .normalize import normalize_unit

logger = logging.getLogger(__name__)

AI_UNAVAILABLE_ADVISORY = "AI analysis unavailable, showing basic matching"
DEFAULT_TIMEOUT_SECONDS = 45.0

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert construction bid analyst. Decide which candidate line item, "
    "if any, represents the same work as each subject item, even when they are "
    "described differently. Answer with JSON only, in the form "
    '{"matches": [{"sourceId": str, "matchedId": str or null, "confidence": 0-100, '
    '"matchType": "exact" | "similar" | "grouped", "notes": str, '
    '"quantityVariancePct": number or null, "priceVariancePct": number or null}]}. '
    "Return exactly one entry per subject item."
)


@dataclass
class MatchRequest:
    """Payload sent to the matching service."""

    subject_items: Sequence[Item]
    candidate_items: Sequence[Item]
    mode: str = TAKEOFF_MODE

    def to_payload(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "subjectItems": [_item_payload(item) for item in self.subject_items],
            "candidateItems": [_item_payload(item) for item in self.candidate_items],
        }


@dataclass
class AIMatch:
    """One entry of the matching service response."""

    source_id: str
    matched_id: Optional[str]
    confidence: float
    match_type: str = "similar"
    notes: str = ""
    quantity_variance_pct: Optional[float] = None
    price_variance_pct: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AIMatch":
        def pick(*names: str) -> Any:
            for name in names:
                if name in data:
                    return data[name]
            return None

        matched = pick("matchedId", "matched_id")
        return cls(
            source_id=str(pick("sourceId", "source_id") or ""),
            matched_id=str(matched) if matched not in (None, "") else None,
            confidence=_clamp_confidence(pick("confidence")),
            match_type=str(pick("matchType", "match_type") or "similar"),
            notes=str(pick("notes") or ""),
            quantity_variance_pct=_optional_number(pick("quantityVariancePct", "quantity_variance_pct")),
            price_variance_pct=_optional_number(pick("priceVariancePct", "price_variance_pct")),
        )


class AIMatchService(ABC):
    """Contract every external matching service must implement."""

    @abstractmethod
    async def match(self, request: MatchRequest) -> List[AIMatch]:
        """Return confidence-scored matches for ``request.subject_items``."""


class OpenAIMatchService(AIMatchService):
    """Matching service backed by an OpenAI chat model."""

    def __init__(self, config: AIConfig, client: Optional[AsyncOpenAI] = None) -> None:
        self.config = config
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = self.config.resolve_api_key()
            if not api_key:
                raise UpstreamError(f"No API key available in ${self.config.api_key_env}")
            self._client = AsyncOpenAI(api_key=api_key)
        return self._client

    async def match(self, request: MatchRequest) -> List[AIMatch]:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.config.model,
                temperature=self.config.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": self.config.system_prompt or DEFAULT_SYSTEM_PROMPT},
                    {"role": "user", "content": json.dumps(request.to_payload(), ensure_ascii=False)},
                ],
            )
        except OpenAIError as exc:
            raise UpstreamError(f"Matching request failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        matches = parse_service_response(content)
        for entry in matches:
            if entry.matched_id is not None and entry.confidence < self.config.min_confidence:
                logger.debug(
                    "Discarding AI match %s -> %s below confidence %s",
                    entry.source_id,
                    entry.matched_id,
                    self.config.min_confidence,
                )
                entry.matched_id = None
                entry.match_type = MATCH_NONE
        return matches


def parse_service_response(content: Optional[str]) -> List[AIMatch]:
    """Extract the list of matches from a model reply."""

    if not content or not content.strip():
        raise UpstreamError("Matching service returned an empty response")
    json_match = re.search(r"[\[{][\s\S]*[\]}]", content)
    if not json_match:
        raise UpstreamError("No JSON found in matching service response")
    try:
        payload = json.loads(json_match.group(0))
    except json.JSONDecodeError as exc:
        raise UpstreamError(f"Malformed JSON from matching service: {exc}") from exc

    if isinstance(payload, Mapping):
        payload = payload.get("matches", [])
    if not isinstance(payload, list):
        raise UpstreamError("Matching service response does not contain a list of matches")
    return [AIMatch.from_dict(entry) for entry in payload if isinstance(entry, Mapping)]


@dataclass
class AdapterOutcome:
    """Matches for one batch plus how they were produced."""

    matches: List[MatchResult] = field(default_factory=list)
    ai_available: bool = True
    ai_matched: int = 0
    heuristic_matched: int = 0
    advisory: Optional[str] = None


class AIMatchAdapter:
    """Runs the matching service and degrades to the heuristic matcher.

    * no service configured: every item is matched heuristically;
    * service failure or timeout: the whole batch is matched heuristically and
      the outcome carries an advisory flag;
    * an item the service did not answer for: that item alone is matched
      heuristically.
    """

    def __init__(
        self,
        service: Optional[AIMatchService] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.service = service
        self.timeout = timeout

    async def match(
        self,
        subject_items: Sequence[Item],
        candidate_items: Sequence[Item],
        mode: str = TAKEOFF_MODE,
        counterpart_bid_id: Optional[str] = None,
    ) -> AdapterOutcome:
        """Match every subject item; ``counterpart_bid_id`` tags unmatched results."""

        mode = normalise_mode(mode)
        if not subject_items:
            return AdapterOutcome()

        responses: Dict[str, AIMatch] = {}
        outcome = AdapterOutcome()
        if self.service is not None and candidate_items:
            request = MatchRequest(subject_items=subject_items, candidate_items=candidate_items, mode=mode)
            try:
                answered = await asyncio.wait_for(self.service.match(request), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning("AI matching timed out after %.0fs; using basic matching", self.timeout)
                outcome.ai_available = False
            except UpstreamError as exc:
                logger.warning("AI matching failed: %s; using basic matching", exc)
                outcome.ai_available = False
            except Exception:
                logger.exception("AI matching service raised unexpectedly; using basic matching")
                outcome.ai_available = False
            else:
                responses = {entry.source_id: entry for entry in answered}

        if not outcome.ai_available:
            outcome.advisory = AI_UNAVAILABLE_ADVISORY

        candidates_by_id = {item.id: item for item in candidate_items}
        for source in subject_items:
            entry = responses.get(source.id)
            result = self._from_ai(source, entry, candidates_by_id) if entry is not None else None
            if result is None:
                result = match_item(source, candidate_items)
                outcome.heuristic_matched += 1
            else:
                outcome.ai_matched += 1
            if result.counterpart_bid_id is None:
                result.counterpart_bid_id = counterpart_bid_id
            fill_variances(result, mode)
            outcome.matches.append(result)
        return outcome

    @staticmethod
    def _from_ai(
        source: Item,
        entry: AIMatch,
        candidates_by_id: Mapping[str, Item],
    ) -> Optional[MatchResult]:
        if entry.matched_id is None:
            return MatchResult(
                source=source,
                counterpart=None,
                confidence=entry.confidence,
                match_type=MATCH_NONE,
                notes=entry.notes,
                origin="ai",
            )
        counterpart = candidates_by_id.get(entry.matched_id)
        if counterpart is None:
            logger.debug("AI matched %s to unknown candidate %s; ignoring", source.id, entry.matched_id)
            return None
        return MatchResult(
            source=source,
            counterpart=counterpart,
            confidence=entry.confidence,
            match_type=entry.match_type or "ai",
            notes=entry.notes,
            quantity_variance_pct=entry.quantity_variance_pct,
            price_variance_pct=entry.price_variance_pct,
            counterpart_bid_id=counterpart.bid_id if isinstance(counterpart, BidLineItem) else None,
            origin="ai",
        )


def fill_variances(result: MatchResult, mode: str = TAKEOFF_MODE) -> MatchResult:
    """Compute variance fields the service did not provide."""

    if result.counterpart is None:
        return result
    reference, compared = reference_pair(result, mode)
    if result.quantity_variance_pct is None:
        result.quantity_variance_pct = percent_difference(reference.quantity, compared.quantity)
    if result.price_variance_pct is None:
        result.price_variance_pct = percent_difference(reference.unit_cost, compared.unit_cost)
    return result


def create_match_service(config: AIConfig) -> Optional[AIMatchService]:
    """Build the configured service, or ``None`` when AI matching is off."""

    if not config.enabled:
        logger.debug("AI matching disabled in configuration")
        return None
    provider = (config.provider or "openai").lower()
    if provider != "openai":
        logger.warning("Unknown AI provider '%s'; AI matching disabled", provider)
        return None
    if not config.resolve_api_key():
        logger.warning("AI matching enabled but $%s is not set; using basic matching", config.api_key_env)
        return None
    return OpenAIMatchService(config)


def _item_payload(item: Item) -> Dict[str, Any]:
    payload = {
        "id": item.id,
        "description": item.description,
        "category": item.category,
        "quantity": item.quantity,
        "unit": normalize_unit(item.unit),
        "unitCost": item.unit_cost,
    }
    if isinstance(item, BidLineItem):
        payload["amount"] = item.amount
        payload["notes"] = item.notes
    return payload


def _optional_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _clamp_confidence(value: Any) -> float:
    number = _optional_number(value)
    if number is None:
        return 0.0
    return max(0.0, min(100.0, number))


__all__ = [
    "AIMatch",
    "AIMatchAdapter",
    "AIMatchService",
    "AI_UNAVAILABLE_ADVISORY",
    "AdapterOutcome",
    "MatchRequest",
    "OpenAIMatchService",
    "create_match_service",
    "fill_variances",
    "parse_service_response",
]
