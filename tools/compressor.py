"""Request compressor: turns raw HTTP text into an attack-relevant summary."""
from __future__ import annotations
import hashlib
import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from models.pydantic_models import (
    RequestCategory,
    ParsedRequest,
    AuthCriticalData,
    PaymentCriticalData,
    RefundCriticalData,
    ApiCriticalData,
    WorkflowCriticalData,
    GenericCriticalData,
    project_critical,
)
from .parsers import (
    split_raw_request,
    parse_request_line,
    parse_headers,
    get_header,
    split_target,
    parse_body,
)

logger = logging.getLogger(__name__)


# Tested in this order, first match wins.
CATEGORY_PATTERNS: Tuple[Tuple[RequestCategory, re.Pattern], ...] = (
    (RequestCategory.AUTH, re.compile(r"login|auth|signin|signup|oauth|sso|password|token|session|jwt", re.I)),
    (RequestCategory.PAYMENT, re.compile(r"payment|checkout|cart|order|price|amount|billing|invoice|subscription", re.I)),
    (RequestCategory.REFUND, re.compile(r"refund|cancel|return|chargeback|dispute|reversal", re.I)),
    (RequestCategory.API, re.compile(r"api|rest|graphql|rpc|webhook|callback", re.I)),
    (RequestCategory.PROFILE, re.compile(r"user|profile|account|settings|preferences|dashboard", re.I)),
    (RequestCategory.WORKFLOW, re.compile(r"step|process|flow|wizard|onboarding|validation", re.I)),
    (RequestCategory.ADMIN, re.compile(r"admin|manage|moderate|control|config|system", re.I)),
    (RequestCategory.SEARCH, re.compile(r"search|query|filter|find|lookup|autocomplete", re.I)),
)

ATTACK_VECTORS: Dict[RequestCategory, List[str]] = {
    RequestCategory.AUTH: [
        "multi-provider-bypass",
        "token-manipulation",
        "session-hijacking",
        "oauth-redirect",
        "password-reset-bypass",
        "jwt-algorithm-confusion",
        "race-condition-login",
    ],
    RequestCategory.PAYMENT: [
        "price-manipulation",
        "negative-amounts",
        "currency-confusion",
        "double-spending",
        "coupon-stacking",
        "race-condition-checkout",
        "payment-method-bypass",
    ],
    RequestCategory.REFUND: [
        "negative-refund",
        "double-refund",
        "refund-without-purchase",
        "partial-refund-abuse",
        "timing-attack",
    ],
    RequestCategory.API: [
        "rate-limit-bypass",
        "graphql-introspection",
        "batch-query-abuse",
        "parameter-pollution",
        "method-override",
    ],
    RequestCategory.PROFILE: [
        "privilege-escalation",
        "data-exposure",
        "account-takeover",
        "profile-pollution",
    ],
    RequestCategory.WORKFLOW: [
        "step-bypass",
        "state-manipulation",
        "workflow-reversal",
        "validation-skip",
    ],
    RequestCategory.ADMIN: [
        "admin-panel-access",
        "config-exposure",
        "privilege-escalation",
        "command-injection",
    ],
    RequestCategory.SEARCH: [
        "sql-injection",
        "nosql-injection",
        "ldap-injection",
        "search-pollution",
    ],
    RequestCategory.UNKNOWN: [
        "general-manipulation",
    ],
}

# Generic patterns that add a dedicated attack vector
PATTERN_VECTORS = {
    "negative-value": "negative-value-exploitation",
    "multi-provider": "provider-confusion-attack",
    "jwt-token": "jwt-manipulation",
}

CRITICAL_HEADERS = [
    "Authorization",
    "Cookie",
    "X-CSRF-Token",
    "X-API-Key",
    "Content-Type",
    "Origin",
    "Referer",
]
HEADER_VALUE_LIMIT = 100


def _first(*values: Any) -> Any:
    """Return the first value that is neither None nor empty."""
    for value in values:
        if value is None:
            continue
        if isinstance(value, (str, list, dict)) and not value:
            continue
        return value
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        try:
            return float(value)
        except OverflowError:
            # Beyond float range
            return math.inf if value > 0 else -math.inf
    if isinstance(value, float):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


class RequestCompressor:
    """Parse, classify and compress raw HTTP requests.

    The compressor is pure: the same raw text always produces the same
    ``ParsedRequest``.
    """

    def parse(self, raw_request: str) -> ParsedRequest:
        """Parse a raw HTTP request. Never fails on malformed input."""
        request_hash = self.generate_hash(raw_request)
        req_line, header_lines, body_text = split_raw_request(raw_request)

        method, target = parse_request_line(req_line)
        endpoint, params, target_host = split_target(target)
        headers = parse_headers(header_lines)
        domain = get_header(headers, "Host") or target_host
        body = parse_body(body_text)

        category = self.detect_category(target, body_text)
        critical = self.extract_critical_data(category, target, headers, body, params)
        patterns = self.detect_patterns(category, critical)
        attack_vectors = self.get_attack_vectors(category, patterns)

        original_size = len(raw_request)
        compressed = json.dumps(project_critical(critical), separators=(",", ":"), default=str)
        compressed_size = len(compressed)
        compression_ratio = 1 - (compressed_size / original_size) if original_size else 0.0

        return ParsedRequest(
            hash=request_hash,
            method=method,
            endpoint=endpoint,
            domain=domain,
            params=params,
            critical=critical,
            headers=self.extract_critical_headers(headers),
            patterns=patterns,
            category=category,
            attack_vectors=attack_vectors,
            original_size=original_size,
            compressed_size=compressed_size,
            compression_ratio=compression_ratio,
        )

    @staticmethod
    def generate_hash(raw_request: str) -> str:
        return hashlib.sha256(raw_request.encode("utf-8", "surrogatepass")).hexdigest()

    @staticmethod
    def detect_category(target: str, body_text: str) -> RequestCategory:
        """Classify against the ordered category patterns."""
        full_text = f"{target} {body_text}"
        for category, pattern in CATEGORY_PATTERNS:
            if pattern.search(full_text):
                return category
        return RequestCategory.UNKNOWN

    @staticmethod
    def extract_critical_data(
        category: RequestCategory,
        target: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
        params: Dict[str, str],
    ):
        """Project the body and params onto the fields that matter for the category."""
        if category == RequestCategory.AUTH:
            callbacks = body.get("callbacks")
            callback_providers = None
            if isinstance(callbacks, list):
                callback_providers = [c.get("provider") for c in callbacks if isinstance(c, dict)] or None
            return AuthCriticalData(
                email=_first(body.get("email"), body.get("username"), params.get("email")),
                providers=_first(body.get("providers"), callback_providers),
                token=_first(body.get("authId"), body.get("token"), get_header(headers, "Authorization")),
                service=_first(params.get("service"), params.get("client_id")),
            )

        if category == RequestCategory.PAYMENT:
            return PaymentCriticalData(
                amount=_first(body.get("amount"), body.get("price"), params.get("amount")),
                currency=_first(body.get("currency"), params.get("currency"), "EUR"),
                method=_first(body.get("payment_method"), params.get("method")),
                items=_first(body.get("items"), body.get("cart")),
            )

        if category == RequestCategory.REFUND:
            return RefundCriticalData(
                amount=_first(body.get("amount"), params.get("amount")),
                order_id=_first(body.get("order_id"), params.get("order")),
                reason=body.get("reason"),
            )

        if category == RequestCategory.API:
            return ApiCriticalData(
                endpoint=target,
                query=_first(body.get("query"), params.get("query")),
                variables=body.get("variables"),
            )

        if category == RequestCategory.WORKFLOW:
            return WorkflowCriticalData(
                step=_first(body.get("step"), params.get("step")),
                skip=_first(body.get("skip"), params.get("skip")),
                id=_first(body.get("id"), params.get("id")),
                action=_first(body.get("action"), params.get("action")),
            )

        return GenericCriticalData(
            id=_first(body.get("id"), params.get("id")),
            action=_first(body.get("action"), params.get("action")),
            data=_first(body.get("data"), params.get("data")),
        )

    @staticmethod
    def detect_patterns(category: RequestCategory, critical) -> List[str]:
        """Detect generic and category-specific patterns in the critical data."""
        patterns: List[str] = []
        amount = getattr(critical, "amount", None)
        providers = getattr(critical, "providers", None)
        token = getattr(critical, "token", None)

        number = _as_number(amount)
        if (number is not None and number < 0) or amount in ("0", "-1"):
            patterns.append("negative-value")

        if isinstance(providers, list) and len(providers) > 1:
            patterns.append("multi-provider")

        if isinstance(token, str):
            bare_token = token[7:] if token.lower().startswith("bearer ") else token
            if bare_token.strip().startswith("eyJ"):
                patterns.append("jwt-token")

        if category == RequestCategory.AUTH:
            if isinstance(providers, list) and "Google" in providers and "Apple" in providers:
                patterns.append("oauth-mixing")
            service = critical.service
            if isinstance(service, str) and "Login" in service and "Register" in service:
                patterns.append("dual-flow")

        elif category == RequestCategory.PAYMENT:
            if number == 0:
                patterns.append("zero-amount")
            items = critical.items
            if isinstance(items, list) and any(
                _as_number(item.get("quantity")) is not None and _as_number(item.get("quantity")) < 0
                for item in items if isinstance(item, dict)
            ):
                patterns.append("negative-quantity")

        elif category == RequestCategory.WORKFLOW:
            if critical.step is not None and critical.skip is not None:
                patterns.append("step-bypass-attempt")

        return patterns

    @staticmethod
    def extract_critical_headers(headers: Dict[str, str]) -> Dict[str, str]:
        critical: Dict[str, str] = {}
        for name in CRITICAL_HEADERS:
            value = get_header(headers, name)
            if value:
                critical[name] = value[:HEADER_VALUE_LIMIT]
        return critical

    @staticmethod
    def get_attack_vectors(category: RequestCategory, patterns: List[str]) -> List[str]:
        vectors = list(ATTACK_VECTORS.get(category, []))
        for pattern, vector in PATTERN_VECTORS.items():
            if pattern in patterns:
                vectors.append(vector)
        # dict.fromkeys keeps first-seen order
        return list(dict.fromkeys(vectors))

    @staticmethod
    def compress_for_context(parsed: ParsedRequest) -> str:
        """Fixed-layout digest used as embedding input and prompt fragment."""
        critical = json.dumps(parsed.body, separators=(",", ":"), default=str)[:200]
        return (
            f"{parsed.method} {parsed.endpoint}\n"
            f"Domain: {parsed.domain}\n"
            f"Category: {parsed.category.value}\n"
            f"Patterns: {', '.join(parsed.patterns)}\n"
            f"Critical: {critical}\n"
            f"Vectors: {', '.join(parsed.attack_vectors[:3])}"
        )
