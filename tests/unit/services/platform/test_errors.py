"""Tests for platform error classification and translation."""

import pytest

from app.provisioning.types import ErrorCategory
from app.services.platform.errors import (
    PlatformAPIError,
    PlatformNetworkError,
    PlatformRateLimitError,
    PlatformTimeoutError,
    classify_error,
    extract_error_details,
    is_not_found,
    simplify_error_message,
    translate_error,
)


class TestClassifyError:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (PlatformRateLimitError("slow down"), ErrorCategory.RATE_LIMIT),
            (PlatformAPIError("limit", code=613), ErrorCategory.RATE_LIMIT),
            (PlatformAPIError("Too many requests"), ErrorCategory.RATE_LIMIT),
            (PlatformTimeoutError("timed out"), ErrorCategory.TRANSIENT),
            (PlatformNetworkError("refused"), ErrorCategory.TRANSIENT),
            (PlatformAPIError("Please retry", code=2), ErrorCategory.TRANSIENT),
            (PlatformAPIError("oops", status_code=503), ErrorCategory.TRANSIENT),
            (PlatformAPIError("Invalid parameter", code=100), ErrorCategory.ENTITY_FATAL),
            (PlatformAPIError("Error validating token", code=190), ErrorCategory.ENTITY_FATAL),
            (PlatformAPIError("Ad account disabled"), ErrorCategory.ENTITY_FATAL),
            (RuntimeError("something odd"), ErrorCategory.TRANSIENT),
        ],
    )
    def test_categories(self, error, expected):
        assert classify_error(error) is expected

    def test_category_property(self):
        assert PlatformAPIError("bad", code=200).category is ErrorCategory.ENTITY_FATAL


class TestIsNotFound:
    def test_code_803(self):
        assert is_not_found(PlatformAPIError("Some of the aliases do not exist", code=803))

    def test_message_match(self):
        assert is_not_found(PlatformAPIError("Unsupported get request. Object not found"))

    def test_other_error(self):
        assert not is_not_found(PlatformAPIError("Permissions error", code=200))


class TestTranslateError:
    @pytest.mark.parametrize(
        "error,reason",
        [
            (PlatformRateLimitError("limit reached", code=17), "rate_limit"),
            (PlatformAPIError("Invalid budget amount", code=100), "budget"),
            (PlatformAPIError("Audience too narrow", code=100), "targeting"),
            (PlatformAPIError("Token expired", code=190), "permissions"),
            (PlatformAPIError("Spend restricted", code=2635), "account"),
            (PlatformAPIError("Image is too small"), "media"),
            (PlatformAPIError("Rejected", code=1487741), "policy"),
            (PlatformAPIError("Pixel not found"), "pixel"),
            (PlatformAPIError("Invalid placement"), "placement"),
            (PlatformAPIError("(#100) Param name must be set", code=100), "invalid_param"),
            (PlatformTimeoutError("timed out"), "network"),
            (PlatformAPIError("Unexpected failure", code=1), "unknown"),
        ],
    )
    def test_reason_tags(self, error, reason):
        _, tag = translate_error(error)

        assert tag == reason

    def test_invalid_param_message_is_simplified(self):
        message, _ = translate_error(
            PlatformAPIError("(#100) Error: Param name must be set", code=100)
        )

        assert message == "Invalid campaign settings: Param name must be set"


class TestSimplifyErrorMessage:
    def test_strips_codes_and_prefixes(self):
        assert simplify_error_message("(#100) Error: name is required") == "name is required"

    def test_truncates_long_messages(self):
        simplified = simplify_error_message("x" * 300)

        assert len(simplified) == 200
        assert simplified.endswith("...")


class TestExtractErrorDetails:
    def test_payload_fields(self):
        error = PlatformAPIError(
            "Invalid parameter",
            code=100,
            subcode=1885183,
            error_type="OAuthException",
            status_code=400,
            user_title="Budget too low",
            fbtrace_id="trace-9",
        )

        details = extract_error_details(error)

        assert details["code"] == 100
        assert details["subcode"] == 1885183
        assert details["type"] == "OAuthException"
        assert details["user_title"] == "Budget too low"
        assert details["category"] == "entity_fatal"
        assert details["reason"] == "invalid_param"

    def test_plain_exception(self):
        details = extract_error_details(ValueError("boom"))

        assert details["type"] == "ValueError"
        assert details["message"] == "boom"
        assert details["category"] == "transient"
