# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

from coreason_oidc_client.exceptions import (
    ConfigurationError,
    CoreasonOIDCError,
    DeviceFlowExpiredError,
    DiscoveryError,
    InvalidAudienceError,
    InvalidIssuerError,
    OversizedResponseError,
    PollingAbortedError,
    ProtocolStateError,
    ResponseValidationError,
    ServerError,
    SignatureVerificationError,
    TimestampCheckError,
    UnsupportedAlgorithmError,
    ValidationCheck,
)


def test_exception_hierarchy() -> None:
    """Test that all custom exceptions inherit from CoreasonOIDCError."""
    for cls in (
        ConfigurationError,
        ServerError,
        ResponseValidationError,
        ProtocolStateError,
        DeviceFlowExpiredError,
        PollingAbortedError,
        OversizedResponseError,
    ):
        assert issubclass(cls, CoreasonOIDCError)
    assert issubclass(DiscoveryError, ConfigurationError)
    for cls in (
        TimestampCheckError,
        InvalidIssuerError,
        InvalidAudienceError,
        SignatureVerificationError,
        UnsupportedAlgorithmError,
    ):
        assert issubclass(cls, ResponseValidationError)


def test_server_error_carries_fields_verbatim() -> None:
    body = {"error": "invalid_grant", "error_description": "code reused", "error_uri": "https://op/e", "x": 1}
    err = ServerError.from_response(body, 400)
    assert err.error == "invalid_grant"
    assert err.error_description == "code reused"
    assert err.error_uri == "https://op/e"
    assert err.status_code == 400
    assert err.response == body
    assert str(err) == "invalid_grant: code reused"


def test_server_error_without_description() -> None:
    assert str(ServerError("authorization_pending")) == "authorization_pending"


def test_validation_error_check() -> None:
    err = ResponseValidationError("nonce mismatch", check=ValidationCheck.NONCE_MISMATCH, parameter="nonce")
    assert str(err) == "nonce mismatch"
    assert err.check == ValidationCheck.NONCE_MISMATCH
    assert err.parameter == "nonce"


def test_validation_error_default_checks() -> None:
    assert ResponseValidationError("x").check == ValidationCheck.INVALID_RESPONSE
    assert TimestampCheckError("x").check == ValidationCheck.TIMESTAMP_CHECK_FAILED
    assert InvalidIssuerError("x").check == ValidationCheck.ISSUER_MISMATCH
    assert UnsupportedAlgorithmError("x").check == ValidationCheck.ALGORITHM_NOT_ALLOWED
