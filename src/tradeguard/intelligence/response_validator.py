"""Multi-stage validation of free-form model output.

Parsing stops at the first stage that yields a JSON object:

1. the whole text;
2. the first fenced code block;
3. the largest ``{...}`` span, after stripping control characters and
   trailing commas;
4. detail responses only: regex extraction of known fields, accepted when
   at least two are found.

Parsed data is then checked for hallucinated symbols (any symbol outside the
expected set) and against the pydantic schema of the call type. Any failure
yields a deterministic fallback with ``used_fallback=True``; the validator
itself never raises.
"""

import re
from typing import Any

import orjson
from pydantic import ValidationError

from tradeguard.brain.models import DetailedSignalResponse, ScreeningResponse, SignalType
from tradeguard.config import DEFAULT_MAJOR_PAIRS
from tradeguard.core.errors import HallucinationError, ResponseParseError
from tradeguard.core.types import ErrorKind, ValidationOutcome
from tradeguard.logging import get_logger

logger = get_logger(__name__)

STAGE_DIRECT = "direct"
STAGE_CODE_BLOCK = "code_block"
STAGE_BRACE_SPAN = "brace_span"
STAGE_FIELDS = "field_extraction"

MAX_STOP_LOSS_DISTANCE = 0.10
SCREENING_FALLBACK_SIZE = 3
DETAIL_FALLBACK_CONFIDENCE = 0.3
EXTRACTED_REASONING = "Extracted from unstructured model output"

_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

_FIELD_PATTERNS: dict[str, re.Pattern[str]] = {
    "signal_type": re.compile(r"(?:signal[_\s]*type|action)[:\s]*([A-Z_]+)", re.IGNORECASE),
    "confidence_score": re.compile(r"confidence(?:[_\s]*score)?[:\s]*([0-9]*\.?[0-9]+)", re.IGNORECASE),
    "asset_pair": re.compile(r"(?:asset[_\s]*pair|symbol)[:\s]*([A-Z0-9]+-[A-Z0-9]+)", re.IGNORECASE),
    "reasoning": re.compile(r"reasoning[:\s]*[\"']?([^\"\n]+)[\"']?", re.IGNORECASE),
}


def normalize_symbol(symbol: str) -> str:
    return symbol.strip().upper()


class ResponseValidator:
    """Turns raw model text into schema-valid data or a safe fallback.

    Args:
        major_pairs: Preferred pairs for the screening fallback.
    """

    def __init__(self, major_pairs: list[str] | None = None) -> None:
        self.major_pairs = [normalize_symbol(p) for p in (major_pairs or DEFAULT_MAJOR_PAIRS)]

    # ── Public API ──────────────────────────────────────────────────────────

    def validate_screening(self, text: str, expected_symbols: list[str]) -> ValidationOutcome:
        """Validate a screening answer against the pairs that were sent to the model."""
        stage: str | None = None
        try:
            data, stage = self.parse(text, allow_field_extraction=False)
            canonical = {normalize_symbol(s): s for s in expected_symbols}
            pairs = data.get("selected_pairs")
            if isinstance(pairs, list):
                for pair in pairs:
                    if isinstance(pair, str) and normalize_symbol(pair) not in canonical:
                        raise HallucinationError(pair, list(expected_symbols))
            result = ScreeningResponse.model_validate(data)
            result.selected_pairs = list(
                dict.fromkeys(canonical[normalize_symbol(p)] for p in result.selected_pairs)
            )
        except (ResponseParseError, HallucinationError, ValidationError) as e:
            return self._failure(e, stage, self.screening_fallback(expected_symbols), "screening")

        return ValidationOutcome(is_valid=True, data=result, parse_stage=stage)

    def validate_detailed_signal(
        self,
        text: str,
        expected_symbol: str,
        reference_price: float | None = None,
    ) -> ValidationOutcome:
        """Validate a single-pair signal.

        Args:
            text: Raw model output.
            expected_symbol: The only pair the model was asked about.
            reference_price: Price that stop-loss distance is measured from.
                When omitted, stop-loss values are treated as ratios to entry.
        """
        stage: str | None = None
        try:
            data, stage = self.parse(text, allow_field_extraction=True)
            asset = data.get("asset_pair")
            if isinstance(asset, str) and normalize_symbol(asset) != normalize_symbol(expected_symbol):
                raise HallucinationError(asset, [expected_symbol])
            data.setdefault("asset_pair", expected_symbol)
            if stage == STAGE_FIELDS:
                data.setdefault("reasoning", EXTRACTED_REASONING)
            if isinstance(data.get("signal_type"), str):
                data["signal_type"] = data["signal_type"].strip().upper()
            signal = DetailedSignalResponse.model_validate(data)
        except (ResponseParseError, HallucinationError, ValidationError) as e:
            return self._failure(e, stage, self.detail_fallback(expected_symbol), "detail")

        signal = self.sanitize(signal, reference_price)
        signal.asset_pair = expected_symbol
        return ValidationOutcome(is_valid=True, data=signal, parse_stage=stage)

    # ── Parsing ─────────────────────────────────────────────────────────────

    def parse(self, text: str, allow_field_extraction: bool = False) -> tuple[dict[str, Any], str]:
        """Run the parse chain.

        Returns:
            The parsed object and the name of the stage that produced it.

        Raises:
            ResponseParseError: If every stage fails.
        """
        if not isinstance(text, str) or not text.strip():
            raise ResponseParseError("Empty or invalid response", stage="input")

        data = _loads_object(text)
        if data is not None:
            return data, STAGE_DIRECT

        match = _CODE_BLOCK_RE.search(text)
        if match:
            data = _loads_object(match.group(1))
            if data is not None:
                return data, STAGE_CODE_BLOCK

        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            data = _loads_object(clean_json_string(text[start : end + 1]))
            if data is not None:
                return data, STAGE_BRACE_SPAN

        if allow_field_extraction:
            data = extract_fields(text)
            if data is not None:
                return data, STAGE_FIELDS

        raise ResponseParseError("Failed to parse model response at all stages", stage="exhausted")

    # ── Sanitising and fallbacks ────────────────────────────────────────────

    @staticmethod
    def sanitize(
        signal: DetailedSignalResponse,
        reference_price: float | None = None,
    ) -> DetailedSignalResponse:
        """Clamp fractions to [0, 1] and pull an extreme stop-loss back to 5%."""
        signal = signal.model_copy()
        signal.confidence_score = min(1.0, max(0.0, signal.confidence_score))
        signal.suggested_position_size_percent = min(
            1.0, max(0.0, signal.suggested_position_size_percent)
        )

        parity = reference_price if reference_price and reference_price > 0 else 1.0
        if signal.stop_loss_price > 0:
            distance = abs(signal.stop_loss_price / parity - 1.0)
            if distance > MAX_STOP_LOSS_DISTANCE:
                original = signal.stop_loss_price
                factor = 0.95 if signal.signal_type is SignalType.BUY else 1.05
                signal.stop_loss_price = parity * factor
                logger.info(
                    "Stop loss for %s clamped from %s to %s",
                    signal.asset_pair,
                    original,
                    signal.stop_loss_price,
                )
        return signal

    def screening_fallback(self, expected_symbols: list[str]) -> ScreeningResponse:
        canonical = {normalize_symbol(s): s for s in expected_symbols}
        pairs = [canonical[p] for p in self.major_pairs if p in canonical]
        if not pairs:
            pairs = list(expected_symbols[:SCREENING_FALLBACK_SIZE])
        # Built without validation: an empty expected set yields an empty list.
        return ScreeningResponse.model_construct(
            selected_pairs=pairs,
            reasoning="Fallback selection due to model response failure",
            market_conditions="Unable to analyze due to technical issues",
        )

    @staticmethod
    def detail_fallback(asset_pair: str) -> DetailedSignalResponse:
        return DetailedSignalResponse(
            asset_pair=asset_pair,
            signal_type=SignalType.HOLD,
            entry_price_suggestion="MARKET",
            take_profit_price=0.0,
            stop_loss_price=0.0,
            confidence_score=DETAIL_FALLBACK_CONFIDENCE,
            reasoning="Auto-generated due to model response failure - holding position for safety",
            suggested_position_size_percent=0.0,
        )

    @staticmethod
    def _failure(
        error: Exception,
        stage: str | None,
        fallback: Any,
        call_type: str,
    ) -> ValidationOutcome:
        if isinstance(error, HallucinationError):
            kind = ErrorKind.HALLUCINATION
            logger.error(
                "Model hallucination in %s response: %s not in %s",
                call_type,
                error.detected_symbol,
                error.expected_symbols[:5],
            )
        else:
            kind = ErrorKind.MALFORMED_RESPONSE
            logger.warning("Invalid %s response, using fallback: %s", call_type, error)
        return ValidationOutcome(
            is_valid=False,
            data=fallback,
            error=str(error),
            error_kind=kind,
            used_fallback=True,
            parse_stage=stage,
        )


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        data = orjson.loads(text)
    except orjson.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def clean_json_string(raw: str) -> str:
    """Strip control characters and trailing commas from a JSON-like string."""
    cleaned = _CONTROL_CHARS_RE.sub("", raw)
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
    return cleaned.strip()


def extract_fields(text: str) -> dict[str, Any] | None:
    """Pull known signal fields out of prose. None unless two or more are found."""
    extracted: dict[str, Any] = {}
    for key, pattern in _FIELD_PATTERNS.items():
        match = pattern.search(text)
        if not match:
            continue
        value: Any = match.group(1).strip()
        if key == "confidence_score":
            try:
                value = min(1.0, max(0.0, float(value)))
            except ValueError:
                continue
        elif key in ("signal_type", "asset_pair"):
            value = value.upper()
        extracted[key] = value
    return extracted if len(extracted) >= 2 else None
