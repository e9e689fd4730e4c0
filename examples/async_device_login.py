import asyncio
import contextlib
import os
import sys

# Add src to path for running directly
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from anyio import create_task_group, sleep

from coreason_oidc_client import (
    ClientSettings,
    CoreasonOIDCError,
    DPoPHandle,
    OIDCClient,
    PollingAbortedError,
    random_dpop_keypair,
)


async def main() -> None:
    """
    Demonstrates a DPoP-bound Device Authorization login.
    Includes:
    - Discovery with exact issuer matching
    - A TaskGroup running the poll loop next to a timeout that aborts it
    - OpenTelemetry instrumentation (auto-applied to the internal client)
    """
    print(">>> Starting Device Login Example")

    issuer = os.getenv("OIDC_ISSUER", "https://auth.example.com")
    client_id = os.getenv("OIDC_CLIENT_ID", "my-cli")
    settings = ClientSettings(http_timeout=5.0, allowed_algorithms=["RS256", "ES256"])

    try:
        client = await OIDCClient.discover(issuer, client_id, settings=settings)
    except CoreasonOIDCError as e:
        # Without a real server, discovery fails after retries
        print(f">>> Expected failure (no real server): {e}")
        return

    async with client:
        handle = await client.start_device_login({"scope": "openid offline_access"})
        print(f">>> Visit {handle.verification_uri_complete or handle.verification_uri}")
        print(f">>> Enter code: {handle.user_code}")

        dpop = DPoPHandle(random_dpop_keypair())

        async def give_up_after(seconds: float) -> None:
            await sleep(seconds)
            handle.abort()

        async with create_task_group() as tg:
            tg.start_soon(give_up_after, 120)
            try:
                tokens = await handle.poll(dpop=dpop)
                print(f">>> Logged in. Token type: {tokens.token_type}")
            except PollingAbortedError:
                print(">>> Gave up waiting for the user.")
            tg.cancel_scope.cancel()

        print(f">>> Final state: {handle.state}")


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
