"""CLI entry point for the Prestrack agent.

A terminal chat that plays the part of one WhatsApp sender, useful for
trying patient, visitor and provider flows against a local database.
Outbound notifications still go through the configured gateway.

Usage:
    python -m prestrack.main --phone +23276000001            # quiet
    python -m prestrack.main --phone +23276000001 --debug    # show API calls
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from dotenv import load_dotenv

from prestrack.errors import InvalidIdentity
from prestrack.identity import to_e164
from prestrack.models import RequestContext

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("prestrack").setLevel(logging.DEBUG if debug else logging.INFO)


async def _chat(phone: str, db_path: str | None) -> None:
    from prestrack.runtime import build_runtime

    runtime = build_runtime(db_path)
    logger.info("Chatting as %s", phone)
    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye!")
                break
            if user_input.lower().startswith("as "):
                try:
                    phone = to_e164(user_input[3:])
                    print(f"\n>> Now chatting as {phone}\n")
                except InvalidIdentity as exc:
                    print(f"\n>> {exc}\n")
                continue

            ctx = RequestContext(
                phone=phone, text=user_input,
                request_id=f"cli-{uuid.uuid4().hex[:8]}", rag_session_key=phone,
            )
            try:
                reply = await runtime.handle_message(ctx)
                print(f"\nLuna: {reply.text}\n")
            except Exception as e:
                logger.exception("Error processing message")
                print(f"\nLuna: I'm sorry, something went wrong: {e}\n")
    finally:
        await runtime.aclose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Prestrack agent CLI")
    parser.add_argument("--phone", required=True, help="Sender phone number (E.164)")
    parser.add_argument("--db", default=None, help="SQLite database path")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    try:
        phone = to_e164(args.phone)
    except InvalidIdentity as exc:
        parser.error(str(exc))

    print("\n" + "=" * 60)
    print("  Prestrack Agent - CLI Chat")
    print("=" * 60)
    print(f"  Sender: {phone}")
    print("  Commands: 'quit' to exit, 'as <phone>' to switch sender.")
    print("=" * 60 + "\n")

    asyncio.run(_chat(phone, args.db))


if __name__ == "__main__":
    main()
