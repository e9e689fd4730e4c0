# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

"""
Internal data models for the coreason-oidc-client package.
These are not exposed in the public API.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuthContribution(BaseModel):
    """
    What a client authentication strategy adds to a single outgoing request.
    """

    model_config = ConfigDict(frozen=True)

    headers: dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers.")
    body: dict[str, str] = Field(default_factory=dict, description="Extra form-encoded body parameters.")


class AuthorizationResponse(BaseModel):
    """
    A validated authorization response: its parameters and, for hybrid responses, the
    claims of the front-channel ID token.
    """

    model_config = ConfigDict(frozen=True)

    params: dict[str, str]
    id_token_claims: dict[str, Any] | None = None
