"""CLI SMS simulator for the concierge.

Runs the same orchestrator the webhook uses, against the configured
database and backoffice API, and prints the reply that would be texted
back.  For production, use the FastAPI server (sms_concierge/server.py).

Usage:
    uv run python -m sms_concierge.main                       # quiet
    uv run python -m sms_concierge.main --phone +13035550142  # as a given sender
    uv run python -m sms_concierge.main --debug               # show API calls
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_PHONE = "+15555550100"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger("sms_concierge").setLevel(logging.DEBUG if debug else logging.INFO)


async def _chat(phone_number: str) -> None:
    # Imported here so ``load_dotenv`` runs before config is read.
    from sms_concierge import config
    from sms_concierge.agent import build_chat_model
    from sms_concierge.context import ContextBuilder
    from sms_concierge.orchestrator import InboundSms, Orchestrator
    from sms_concierge.services.backoffice_client import BackofficeClient
    from sms_concierge.storage.conversation_store import ConversationStore
    from sms_concierge.storage.database import Database
    from sms_concierge.tools.registry import ToolExecutor

    database = Database(config.DATABASE_URL)
    await database.create_all()
    store = ConversationStore(database.session_factory)
    backoffice = BackofficeClient(config.BACKOFFICE_BASE_URL, config.BACKOFFICE_API_TOKEN)
    orchestrator = Orchestrator(
        llm=build_chat_model(
            config.ANTHROPIC_API_KEY,
            model_name=config.MODEL_NAME,
            max_tokens=config.MAX_OUTPUT_TOKENS,
            base_url=config.ANTHROPIC_BASE_URL,
            request_timeout=config.LLM_ROUND_TIMEOUT_SECONDS,
        ),
        context_builder=ContextBuilder.from_config(backoffice, store),
        store=store,
        executor=ToolExecutor(backoffice, store),
    )

    print("\n" + "=" * 60)
    print("  SMS Concierge - CLI Simulator")
    print("=" * 60)
    print(f"  Texting as {phone_number}.")
    print("  Commands: 'quit' to exit, 'close' to end the conversation.")
    print("=" * 60 + "\n")

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

            if user_input.lower() == "close":
                conversation_id = await store.find_or_create(phone_number, None)
                await store.close(conversation_id)
                print("\n>> Conversation closed; the next message starts a new one.\n")
                continue

            result = await orchestrator.handle(
                InboundSms(phone_number, user_input, gateway_message_id=f"CLI{uuid.uuid4().hex}")
            )
            print(f"\nConcierge: {result.reply}")
            print(f"   [{result.outcome.value}; tools: {', '.join(result.tools_used) or 'none'}]\n")
    finally:
        await backoffice.aclose()
        await database.dispose()


def main():
    """Run the interactive SMS simulator."""
    parser = argparse.ArgumentParser(description="SMS Concierge CLI simulator")
    parser.add_argument("--phone", default=DEFAULT_PHONE, help="Sender phone number to simulate")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    from sms_concierge.services.gateway import normalize_phone_number

    asyncio.run(_chat(normalize_phone_number(args.phone)))


if __name__ == "__main__":
    main()
