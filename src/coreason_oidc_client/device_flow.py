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
OAuth 2.0 Device Authorization Grant (RFC 8628): initiation and the polling state machine.
"""

import time
from collections.abc import Awaitable, Callable, Mapping
from enum import StrEnum

import anyio
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_oidc_client.config import Configuration
from coreason_oidc_client.dpop import DPoPHandle
from coreason_oidc_client.exceptions import (
    CoreasonOIDCError,
    DeviceFlowExpiredError,
    PollingAbortedError,
    ProtocolStateError,
    ResponseValidationError,
    ServerError,
    ValidationCheck,
)
from coreason_oidc_client.grants import authenticated_post, check_dpop_requirement, token_request
from coreason_oidc_client.models import DeviceAuthorizationResponse, DeviceFlowState, TokenEndpointResponse
from coreason_oidc_client.transport import parse_json_object
from coreason_oidc_client.utils.logger import fingerprint, logger
from coreason_oidc_client.validator import ResponseValidator

tracer = trace.get_tracer(__name__)

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
SLOW_DOWN_INCREMENT = 5.0

Delay = Callable[[float], Awaitable[None]]


class PollOutcome(StrEnum):
    SUCCESS = "success"
    AUTHORIZATION_PENDING = "authorization_pending"
    SLOW_DOWN = "slow_down"
    ERROR = "error"
    EXPIRED = "expired"
    ABORTED = "aborted"


_OUTCOME_STATES = {
    PollOutcome.SUCCESS: DeviceFlowState.SUCCEEDED,
    PollOutcome.AUTHORIZATION_PENDING: DeviceFlowState.POLLING,
    PollOutcome.SLOW_DOWN: DeviceFlowState.POLLING,
    PollOutcome.ERROR: DeviceFlowState.FAILED,
    PollOutcome.EXPIRED: DeviceFlowState.EXPIRED,
    PollOutcome.ABORTED: DeviceFlowState.ABORTED,
}


def transition(state: DeviceFlowState, outcome: PollOutcome, interval: float) -> tuple[DeviceFlowState, float]:
    """
    The polling state machine.

    ``slow_down`` grows the interval by five seconds for every later request; every other
    outcome keeps it.

    Returns:
        The next state and polling interval.

    Raises:
        ProtocolStateError: If ``state`` is terminal.
    """
    if state.is_terminal:
        raise ProtocolStateError(f"device flow already concluded ({state})")
    if outcome is PollOutcome.SLOW_DOWN:
        interval += SLOW_DOWN_INCREMENT
    return _OUTCOME_STATES[outcome], interval


class DeviceAuthorizationHandle:
    """
    One device authorization: the codes to show the user and the polling loop that awaits the grant.

    Attributes:
        device_code (str): The device verification code. Never logged.
        user_code (str): The code the user enters at the verification URI.
        verification_uri (str): The URI the user should visit.
        verification_uri_complete (str | None): The URI including the user code, if provided.
        issued_at (float): When the device authorization response was received.
        expires_in (float): Lifetime in seconds of the codes.
    """

    def __init__(
        self,
        config: Configuration,
        response: DeviceAuthorizationResponse,
        *,
        issued_at: float | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config
        self._clock = clock or time.time
        self.device_code = response.device_code
        self.user_code = response.user_code
        self.verification_uri = response.verification_uri
        self.verification_uri_complete = response.verification_uri_complete
        self.issued_at = issued_at if issued_at is not None else self._clock()
        self.expires_in = response.expires_in
        self._interval = response.interval
        self._state = DeviceFlowState.ISSUED
        self._aborted = False
        self._abort_event: anyio.Event | None = None
        self._polling = False

    @property
    def state(self) -> DeviceFlowState:
        return self._state

    @property
    def interval(self) -> float:
        """The current polling interval announced by the server, before the configured floor applies."""
        return self._interval

    def expired(self) -> bool:
        return self._clock() >= self.issued_at + self.expires_in

    def abort(self) -> None:
        """
        Cancels polling. Safe to call at any time, including before polling starts.

        A wait in progress is interrupted; the result of a request in flight is discarded.
        """
        self._aborted = True
        if self._abort_event is not None:
            self._abort_event.set()

    def _advance(self, outcome: PollOutcome) -> None:
        self._state, self._interval = transition(self._state, outcome, self._interval)

    async def _wait(self, seconds: float, delay: Delay | None) -> None:
        if delay is not None:
            await delay(seconds)
            return
        if self._abort_event is None:
            await anyio.sleep(seconds)
            return
        with anyio.move_on_after(seconds):
            await self._abort_event.wait()

    def _raise_if_aborted(self) -> None:
        if self._aborted:
            self._advance(PollOutcome.ABORTED)
            logger.info("Device flow polling aborted")
            raise PollingAbortedError("polling aborted")

    def _raise_if_expired(self) -> None:
        if self.expired():
            self._advance(PollOutcome.EXPIRED)
            logger.warning("Device code expired before the authorization was granted")
            raise DeviceFlowExpiredError(
                "the device code has expired and the device authorization flow must be restarted"
            )

    async def poll(self, *, dpop: DPoPHandle | None = None, delay: Delay | None = None) -> TokenEndpointResponse:
        """
        Polls the token endpoint until the authorization is granted, denied, expires or is aborted.

        Each round checks for abort, then expiry, waits the current interval (never less than the
        ``min_poll_interval`` setting), checks again, and only then issues the token request.

        Emits an OpenTelemetry span `device_flow_poll`.

        Args:
            dpop: DPoP handle of the flow, if the tokens must be sender-constrained.
            delay: Replacement for the interval wait, e.g. to drive the loop deterministically in tests.
                The abort signal is then observed when the delay returns.

        Returns:
            TokenEndpointResponse: The validated token response.

        Raises:
            PollingAbortedError: If :meth:`abort` was called.
            DeviceFlowExpiredError: If the device code expired.
            ServerError: If the server answered with an error other than ``authorization_pending``/``slow_down``.
            ResponseValidationError: If the token response fails validation.
            ProtocolStateError: If polling already concluded or is already running.
            ConfigurationError: If DPoP is required but no handle is given.
        """
        check_dpop_requirement(self._config, dpop)
        if self._polling:
            raise ProtocolStateError("a poll loop is already running for this device authorization")
        if self._state.is_terminal:
            raise ProtocolStateError(f"device flow already concluded ({self._state})")

        self._polling = True
        self._abort_event = anyio.Event()
        if self._aborted:
            self._abort_event.set()
        self._state = DeviceFlowState.POLLING

        with tracer.start_as_current_span("device_flow_poll") as span:
            span.set_attribute("oauth.device_code.fingerprint", fingerprint(self.device_code))
            try:
                result = await self._poll_loop(dpop, delay)
            except CoreasonOIDCError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            finally:
                self._polling = False

            span.set_status(Status(StatusCode.OK))
            return result

    async def _poll_loop(self, dpop: DPoPHandle | None, delay: Delay | None) -> TokenEndpointResponse:
        floor = self._config.settings.min_poll_interval
        logger.info(f"Polling for token. Expires in {self.expires_in}s. Interval: {self._interval}s")

        while True:
            self._raise_if_aborted()
            self._raise_if_expired()

            if self._interval < floor:
                logger.warning(f"Server requested polling interval {self._interval}s. Enforcing minimum {floor}s.")
            await self._wait(max(self._interval, floor), delay)

            self._raise_if_aborted()
            self._raise_if_expired()

            try:
                response = await token_request(
                    self._config, DEVICE_CODE_GRANT_TYPE, {"device_code": self.device_code}, dpop=dpop
                )
            except ServerError as e:
                self._raise_if_aborted()
                if e.error == "authorization_pending":
                    self._advance(PollOutcome.AUTHORIZATION_PENDING)
                    continue
                if e.error == "slow_down":
                    self._advance(PollOutcome.SLOW_DOWN)
                    logger.debug(f"Received slow_down, interval is now {self._interval}s")
                    continue
                self._advance(PollOutcome.ERROR)
                logger.error(f"Device flow failed: {e}")
                raise
            except CoreasonOIDCError:
                self._raise_if_aborted()
                self._advance(PollOutcome.ERROR)
                raise

            self._raise_if_aborted()
            try:
                result = await ResponseValidator(self._config).process_token_response(
                    response, check_nonce=False, dpop_bound=dpop is not None
                )
            except CoreasonOIDCError:
                self._advance(PollOutcome.ERROR)
                raise

            self._advance(PollOutcome.SUCCESS)
            logger.info("Device authorization granted")
            return result

    def __repr__(self) -> str:
        return (
            f"DeviceAuthorizationHandle(user_code={self.user_code!r}, verification_uri={self.verification_uri!r}, "
            f"state={self._state!r})"
        )


async def initiate_device_authorization(
    config: Configuration,
    parameters: Mapping[str, str] | None = None,
    *,
    clock: Callable[[], float] | None = None,
) -> DeviceAuthorizationHandle:
    """
    Starts a device authorization (RFC 8628, Section 3.1).

    Args:
        config: The client configuration.
        parameters: Request parameters such as ``scope``, plus any extension parameters.
        clock: Time source of the returned handle.

    Returns:
        DeviceAuthorizationHandle: The handle to show the user code from and to poll.

    Raises:
        ConfigurationError: If the server lacks a device authorization or token endpoint.
        ServerError: If the server rejects the request.
        ResponseValidationError: If the response is malformed.
    """
    # Both endpoints must exist before anything is sent
    config.endpoint("device_authorization_endpoint")
    config.endpoint("token_endpoint")

    with tracer.start_as_current_span("initiate_device_authorization") as span:
        try:
            response = await authenticated_post(config, "device_authorization_endpoint", dict(parameters or {}))
            body = parse_json_object(response)
            if response.status_code != 200:
                if isinstance(body.get("error"), str):
                    raise ServerError.from_response(body, response.status_code)
                raise ResponseValidationError(
                    f"unexpected HTTP status code {response.status_code} from the device authorization endpoint",
                    check=ValidationCheck.INVALID_RESPONSE,
                )
            try:
                device_response = DeviceAuthorizationResponse(**body)
            except ValidationError as e:
                raise ResponseValidationError(
                    f"invalid device authorization response: {e}", check=ValidationCheck.INVALID_RESPONSE
                ) from e
        except CoreasonOIDCError as e:
            logger.error(f"Device flow initiation failed: {e}")
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise

        span.set_status(Status(StatusCode.OK))

    handle = DeviceAuthorizationHandle(config, device_response, clock=clock)
    logger.info(f"Device authorization started, user code {handle.user_code} at {handle.verification_uri}")
    return handle
