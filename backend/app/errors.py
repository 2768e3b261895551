"""
errors.py — AppError base class and error/warning code registries.

Every error returned by the API must use a code defined here. Service and
route code never raise bare strings or generic exceptions for business
failures.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose and may be reworded at any time.
  - 401 (unauthenticated) and 403 (not a household member / not the account
    owner) are never conflated.
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the section header.
# These are the string values sent in the API response.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    INVALID_AMOUNT_PRECISION   = "INVALID_AMOUNT_PRECISION"
    INVALID_RULE_TYPE          = "INVALID_RULE_TYPE"
    INVALID_MERCHANT_PATTERN   = "INVALID_MERCHANT_PATTERN"
    SPLIT_PERCENTAGE_SUM       = "SPLIT_PERCENTAGE_SUM"
    INVALID_BATCH_ACTION       = "INVALID_BATCH_ACTION"
    INVALID_DATE_RANGE         = "INVALID_DATE_RANGE"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    RULE_ALREADY_INACTIVE      = "RULE_ALREADY_INACTIVE"
    CONCURRENT_MODIFICATION    = "CONCURRENT_MODIFICATION"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    HOUSEHOLD_NOT_FOUND        = "HOUSEHOLD_NOT_FOUND"
    RULE_NOT_FOUND             = "RULE_NOT_FOUND"
    TRANSACTION_NOT_FOUND      = "TRANSACTION_NOT_FOUND"
    TEMPLATE_NOT_FOUND         = "TEMPLATE_NOT_FOUND"

    # ── Business Rule Violations (422) ────────────────────────────────────
    SPLIT_USER_NOT_MEMBER      = "SPLIT_USER_NOT_MEMBER"
    INVALID_SPLIT              = "INVALID_SPLIT"
    TRANSACTION_NOT_SHARED     = "TRANSACTION_NOT_SHARED"

    # ── Auth Errors ────────────────────────────────────────────────────────
    # 401 = we do not know who you are (unauthenticated)
    # 403 = we know who you are, but you are not allowed
    TOKEN_MISSING              = "TOKEN_MISSING"          # 401
    TOKEN_INVALID              = "TOKEN_INVALID"          # 401
    TOKEN_EXPIRED              = "TOKEN_EXPIRED"          # 401
    FORBIDDEN                  = "FORBIDDEN"              # 403

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"


# ── Warning Code Registry ──────────────────────────────────────────────────
#
# Warnings are returned alongside a 2xx response in the `warnings` array.
# They never block the request.
# ──────────────────────────────────────────────────────────────────────────

class WarningCode:

    # A new or updated rule overlaps an active rule of the same type.
    # Saved anyway — the author decides whether to adjust priority.
    RULE_CONFLICT            = "RULE_CONFLICT"

    # A non-default rule is ordered after an active default rule and can
    # therefore never be reached (or a default rule is ordered too early).
    RULE_SHADOWED_BY_DEFAULT = "RULE_SHADOWED_BY_DEFAULT"
