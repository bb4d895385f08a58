"""
Trade Scoring Engine - Feature Extraction.

============================================================
PURPOSE
============================================================
Turns a raw trade draft plus a loosely-keyed factor map into
the canonical ExtractedFeatures bag the engine scores.

============================================================
STEPS
============================================================
1. Validate the trade draft against a minimal schema
2. Normalize factor keys (lowercase, [a-z0-9_] only)
3. Resolve canonical features through the alias table
4. Derive days-to-expiration and credit-to-width when not
   supplied directly
5. Range-check delta and credit-to-width
6. Fingerprint the normalized input for caching

Expected bad input (missing fields, wrong types, values out
of range) is reported in the result, never raised.

============================================================
"""

import hashlib
import json
import logging
import math
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .clock import ClockProtocol, SystemClock
from .types import ExtractedFeatures, ExtractionIssue, FeatureExtractionResult


logger = logging.getLogger(__name__)


# =============================================================
# ALIAS TABLE
# =============================================================


FACTOR_ALIASES: Dict[str, Tuple[str, ...]] = {
    "credit_to_width_pct": (
        "credit_to_width_pct",
        "credit_to_width_percent",
        "credit_to_width_percentage",
        "credit_width_pct",
        "credit/width %",
        "credit to width",
    ),
    "delta_short": (
        "delta_short",
        "short_delta",
        "short leg delta",
        "delta (short)",
        "delta short",
    ),
    "iv_rank": ("iv_rank", "ivr", "iv rank"),
    "oi_short_leg_min": (
        "oi_short_leg_min",
        "short_leg_open_interest",
        "short leg oi",
        "short_oi",
    ),
    "bid_ask_pct": (
        "bid_ask_pct",
        "bid-ask %",
        "bid_ask_spread_pct",
        "bid ask pct",
    ),
    "days_to_earnings": (
        "days_to_earnings",
        "earnings_days",
        "days until earnings",
    ),
    "macro_event_flag": (
        "macro_event_flag",
        "macro event",
        "macro risk flag",
    ),
    "price_above_ma_50": (
        "price_above_ma_50",
        "price>ma50",
        "price above ma50",
        "above_50_ma",
    ),
    "rsi_14": ("rsi_14", "rsi", "rsi14"),
    "fill_vs_mid_bps": (
        "fill_vs_mid_bps",
        "fill_vs_mid",
        "fill vs mid bps",
    ),
    "dte": ("dte", "days_to_expiration"),
}

NUMERIC_FEATURES: Tuple[str, ...] = (
    "credit_to_width_pct",
    "delta_short",
    "iv_rank",
    "oi_short_leg_min",
    "bid_ask_pct",
    "days_to_earnings",
    "rsi_14",
    "fill_vs_mid_bps",
    "dte",
)

BOOLEAN_FEATURES: Tuple[str, ...] = ("price_above_ma_50",)

CANONICAL_FEATURES: Tuple[str, ...] = tuple(FACTOR_ALIASES)

_NON_KEY_CHARS = re.compile(r"[^a-z0-9]+")

_TRUE_STRINGS = ("true", "yes", "y", "1")
_FALSE_STRINGS = ("false", "no", "n", "0")


# =============================================================
# TRADE DRAFT SCHEMA
# =============================================================


class TradeDraft(BaseModel):
    """Minimal schema a trade draft must satisfy to be scored."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    symbol: str = Field(min_length=1)
    contract_type: str = Field(
        min_length=1,
        validation_alias=AliasChoices("contractType", "contract_type", "strategy"),
    )
    expiration_date: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("expirationDate", "expiration_date"),
    )
    credit_received: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("creditReceived", "credit_received")
    )
    short_put_strike: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("shortPutStrike", "short_put_strike")
    )
    long_put_strike: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("longPutStrike", "long_put_strike")
    )
    short_call_strike: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("shortCallStrike", "short_call_strike")
    )
    long_call_strike: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("longCallStrike", "long_call_strike")
    )
    option_strike: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("optionStrike", "option_strike")
    )
    debit_paid: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("debitPaid", "debit_paid")
    )
    number_of_contracts: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("numberOfContracts", "number_of_contracts")
    )

    @field_validator("expiration_date", mode="before")
    @classmethod
    def _date_to_iso(cls, value: Any) -> Any:
        if isinstance(value, (date, datetime)):
            return value.isoformat()
        return value

    @property
    def spread_width(self) -> Optional[float]:
        """Absolute strike spread, put legs first, else call legs."""
        if self.short_put_strike is not None and self.long_put_strike is not None:
            return abs(self.short_put_strike - self.long_put_strike)
        if self.short_call_strike is not None and self.long_call_strike is not None:
            return abs(self.long_call_strike - self.short_call_strike)
        return None


# =============================================================
# HELPERS
# =============================================================


def normalise_key(key: Any) -> str:
    """Lowercase and collapse everything outside [a-z0-9] to '_'."""
    return _NON_KEY_CHARS.sub("_", str(key).lower()).strip("_")


def to_number(value: Any) -> Optional[float]:
    """Finite float, or None. Booleans are not numbers here."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def to_boolean(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        norm = value.strip().lower()
        if norm in _TRUE_STRINGS:
            return True
        if norm in _FALSE_STRINGS:
            return False
        return None
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
    return None


def parse_expiration(value: str) -> Optional[datetime]:
    """Parse an ISO date or datetime; date-only means 00:00 UTC."""
    text = value.strip()
    try:
        if len(text) == 10:
            parsed_date = date.fromisoformat(text)
            return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=timezone.utc)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compute_dte(expiration: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole days to expiration, rounded half up, floored at zero."""
    if expiration is None:
        return None
    days = (expiration - now).total_seconds() / 86400.0
    return max(0, math.floor(days + 0.5))


def compute_credit_to_width(trade: TradeDraft) -> Optional[float]:
    width = trade.spread_width
    if trade.credit_received is None or width is None or width == 0:
        return None
    return round(trade.credit_received / width, 4)


def normalise_factors(factor_values: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Normalize factor keys.

    Keys are visited in sorted order so colliding spellings
    resolve the same way regardless of insertion order.
    """
    normalised: Dict[str, Any] = {}
    for key, value in sorted((factor_values or {}).items(), key=lambda item: str(item[0])):
        normalised[normalise_key(key)] = value
    return normalised


def hash_input(payload: Mapping[str, Any]) -> str:
    """SHA-256 over key-sorted JSON (nested mappings sorted too)."""
    payload_str = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(payload_str.encode("utf-8")).hexdigest()


def canonical_input(
    trade_draft: Optional[Mapping[str, Any]],
    factor_values: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """Normalized trade draft and factor map, as fingerprinted."""
    try:
        trade: Dict[str, Any] = TradeDraft.model_validate(trade_draft or {}).model_dump(exclude_none=True)
    except ValidationError:
        raw = trade_draft if isinstance(trade_draft, Mapping) else {}
        trade = {str(k): v for k, v in raw.items() if v is not None}
    return {"trade": trade, "factors": normalise_factors(factor_values)}


def fingerprint_input(
    trade_draft: Optional[Mapping[str, Any]],
    factor_values: Optional[Mapping[str, Any]],
) -> str:
    """Order-independent fingerprint of a trade draft and its factors."""
    return hash_input(canonical_input(trade_draft, factor_values))


def fingerprint_for_caching(
    rubric_version: str,
    trade_draft: Optional[Mapping[str, Any]],
    factor_values: Optional[Mapping[str, Any]],
    ips_id: str,
) -> str:
    """Cache fingerprint: rubric version and policy folded into the input hash."""
    payload = canonical_input(trade_draft, factor_values)
    payload["rubricVersion"] = rubric_version
    payload["ipsId"] = ips_id
    return hash_input(payload)


# =============================================================
# EXTRACTOR
# =============================================================


class FeatureExtractor:
    """
    Builds ExtractedFeatures from a trade draft and factor map.

    Usage:
        extractor = FeatureExtractor(clock=SystemClock())
        result = extractor.extract(trade_draft, factor_values)
        if not result.ok:
            print(result.missing, result.out_of_range)
    """

    def __init__(
        self,
        clock: Optional[ClockProtocol] = None,
        aliases: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        """
        Args:
            clock: Evaluation clock for days-to-expiration
            aliases: Override of the canonical alias table
        """
        self._clock = clock or SystemClock()
        alias_table = aliases if aliases is not None else FACTOR_ALIASES
        self._aliases: Dict[str, Tuple[str, ...]] = {
            feature: tuple(normalise_key(a) for a in names)
            for feature, names in alias_table.items()
        }

    def _lookup(self, factors: Mapping[str, Any], feature: str) -> Any:
        for alias in self._aliases.get(feature, (normalise_key(feature),)):
            if alias in factors:
                return factors[alias]
        return None

    def extract(
        self,
        trade_draft: Optional[Mapping[str, Any]],
        factor_values: Optional[Mapping[str, Any]],
        extra_features: Iterable[str] = (),
    ) -> FeatureExtractionResult:
        """
        Extract canonical features.

        Args:
            trade_draft: Raw trade description
            factor_values: Loosely-keyed factor values
            extra_features: Additional feature names a rubric needs
                that are not in the alias table; looked up by
                normalized name

        Returns:
            FeatureExtractionResult; ok=False carries partial features
        """
        try:
            trade = TradeDraft.model_validate(trade_draft or {})
        except ValidationError as e:
            schema_issues = tuple(
                ExtractionIssue(
                    field=".".join(str(part) for part in err["loc"]) or "trade",
                    message=err["msg"],
                )
                for err in e.errors()
            )
            logger.debug(f"Trade draft rejected: {', '.join(str(i) for i in schema_issues)}")
            return FeatureExtractionResult(
                ok=False,
                features=None,
                missing=tuple(issue.field for issue in schema_issues),
                out_of_range=schema_issues,
                error=", ".join(issue.message for issue in schema_issues),
            )

        factors = normalise_factors(factor_values)
        issues: List[ExtractionIssue] = []
        missing: List[str] = []

        features: Dict[str, Any] = {
            "strategy": normalise_key(trade.contract_type),
            "symbol": trade.symbol,
            "expiration_date": trade.expiration_date,
        }

        derived_dte: Optional[int] = None
        if trade.expiration_date:
            expiration = parse_expiration(trade.expiration_date)
            if expiration is None:
                issues.append(ExtractionIssue("expiration_date", "Expiration date is not an ISO date"))
            else:
                derived_dte = compute_dte(expiration, self._clock.now())
                if derived_dte <= 0:
                    issues.append(ExtractionIssue("dte", "Expiration must be in the future"))

        derived = {
            "credit_to_width_pct": compute_credit_to_width(trade),
            "dte": derived_dte,
        }

        for feature in NUMERIC_FEATURES:
            value = to_number(self._lookup(factors, feature))
            if value is None:
                value = derived.get(feature)
            if value is None:
                missing.append(feature)
            else:
                features[feature] = value

        for feature in BOOLEAN_FEATURES:
            flag = to_boolean(self._lookup(factors, feature))
            if flag is None:
                missing.append(feature)
            else:
                features[feature] = flag

        macro_flag = self._lookup(factors, "macro_event_flag")
        if isinstance(macro_flag, str) and macro_flag.strip():
            features["macro_event_flag"] = macro_flag.strip()
        elif macro_flag is None:
            missing.append("macro_event_flag")
        else:
            issues.append(ExtractionIssue("macro_event_flag", "Macro flag must be a string"))

        for feature in extra_features:
            if feature in features or feature in self._aliases:
                continue
            value = self._lookup(factors, feature)
            if value is None:
                missing.append(feature)
            else:
                features[feature] = value

        delta = features.get("delta_short")
        if delta is not None and (delta < 0 or delta > 1):
            issues.append(ExtractionIssue("delta_short", "Delta must be between 0 and 1"))

        credit_width = features.get("credit_to_width_pct")
        if credit_width is not None and credit_width <= 0:
            issues.append(ExtractionIssue("credit_to_width_pct", "Credit/width must be positive"))

        fingerprint = hash_input({"trade": trade.model_dump(exclude_none=True), "factors": factors})
        extracted = ExtractedFeatures(features)

        if issues or missing:
            logger.debug(
                f"Extraction for {trade.symbol} incomplete: "
                f"missing={missing}, issues={[str(i) for i in issues]}"
            )
            return FeatureExtractionResult(
                ok=False,
                features=extracted,
                missing=tuple(missing),
                out_of_range=tuple(issues),
                error="Missing or invalid fields",
                input_fingerprint=fingerprint,
            )

        return FeatureExtractionResult(
            ok=True,
            features=extracted,
            input_fingerprint=fingerprint,
        )


def extract_features(
    trade_draft: Optional[Mapping[str, Any]],
    factor_values: Optional[Mapping[str, Any]],
    clock: Optional[ClockProtocol] = None,
) -> FeatureExtractionResult:
    """Convenience wrapper around FeatureExtractor.extract."""
    return FeatureExtractor(clock=clock).extract(trade_draft, factor_values)
