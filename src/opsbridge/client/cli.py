"""CLI client for the opsbridge API."""

from __future__ import annotations

import getpass
import logging
import time
from typing import (
    Any,
    Dict,
    Optional,
    Tuple,
    cast,
)

import httpx

from opsbridge.common import (
    AnsiColors,
    colored_print,
    describe_validation_request,
)
from opsbridge.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def call_api(
    endpoint: str,
    data: Dict[str, Any],
    actor_id: str,
    max_retries: int = 5,
    client: Optional[httpx.Client] = None,
) -> Dict[str, Any]:
    """POST *data* to *endpoint* with retries; errors come back as ``{"answer": <message>}``."""
    api_url = f"http://localhost:{settings.API_PORT}{endpoint}"
    headers = {"X-Actor-Id": actor_id}
    http = client or httpx.Client(timeout=120.0)

    try:
        for attempt in range(max_retries):
            try:
                response = http.post(api_url, json=data, headers=headers)
                response.raise_for_status()
                return cast(Dict[str, Any], response.json())
            except httpx.ConnectError as e:
                if attempt < max_retries - 1:
                    retry_delay = 0.5 * (2**attempt)  # exponential backoff: 0.5s, 1s, 2s, 4s...
                    logger.info(
                        "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                        retry_delay,
                        attempt + 1,
                        max_retries,
                    )
                    time.sleep(retry_delay)
                    continue
                logger.error("API request error: %s", str(e))
                break
            except httpx.HTTPStatusError as e:
                error_msg = f"API error: {e.response.status_code}"
                try:
                    error_data = e.response.json()
                    if "detail" in error_data:
                        error_msg = f"API error: {error_data['detail']}"
                except ValueError:
                    pass
                colored_print(error_msg, AnsiColors.RED)
                return {"answer": error_msg}
            except httpx.HTTPError as e:
                logger.error("API request error: %s", str(e))
                error_msg = f"Error connecting to API: {str(e)}"
                colored_print(error_msg, AnsiColors.RED)
                return {"answer": error_msg}
    finally:
        if client is None:
            http.close()

    error_msg = f"Failed to connect to API after {max_retries} attempts"
    colored_print(error_msg, AnsiColors.RED)
    return {"answer": error_msg}


def ask_approval(request: Dict[str, Any]) -> Optional[bool]:
    """Ask the operator to approve a pending operation; ``None`` when input was aborted."""
    colored_print(
        f"\n⚠️  Approve {describe_validation_request(request)}? [y/N]: ",
        AnsiColors.RED,
        end="",
    )
    answer, ok = get_user_message()
    if not ok:
        return None
    return answer.lower() in {"y", "yes"}


def show_response(response: Dict[str, Any]) -> None:
    colored_print(response.get("answer", "No response from API"), AnsiColors.YELLOW)


def run_cli(actor_id: Optional[str] = None) -> None:
    """Run the CLI client that communicates with the API."""
    actor = actor_id or getpass.getuser()
    session_id: Optional[str] = None

    colored_print("\n🛠️ opsbridge shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN)
    while True:
        colored_print("\n🧑 You: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue

        response = call_api("/assistant", {"prompt": user_msg, "session_id": session_id}, actor)
        session_id = response.get("session_id", session_id)
        show_response(response)

        # Approvals can chain: an approved call may lead to another one needing approval
        while response.get("validation_request"):
            request = response["validation_request"]
            approved = ask_approval(request)
            if approved is None:
                return
            response = call_api(
                "/assistant/validation", {"id": request["id"], "approved": approved}, actor
            )
            show_response(response)


if __name__ == "__main__":
    run_cli()
