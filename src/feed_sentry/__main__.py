"""Entry point for Feed Sentry: python -m feed_sentry"""

import asyncio
import logging
import uuid

from langchain_core.messages import HumanMessage

from feed_sentry.agent import create_agent
from feed_sentry.app import FeedSentry
from feed_sentry.config import load_settings
from feed_sentry.tools import build_tools

logger = logging.getLogger("feed_sentry")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("langchain").setLevel(logging.WARNING)


async def chat_loop(agent, config: dict) -> None:
    """Run the interactive chat loop."""
    print("Feed Sentry ready! Type your message (Ctrl+C to quit).\n")

    while True:
        try:
            user_input = await asyncio.to_thread(input, "You: ")
        except EOFError:
            break

        if not user_input.strip():
            continue

        try:
            response = await asyncio.to_thread(
                agent.invoke,
                {"messages": [HumanMessage(content=user_input)]},
                config,
            )
            last_message = response["messages"][-1]
            print(f"\nFeed Sentry: {last_message.content}\n")
        except Exception as e:
            error_msg = str(e)
            if "tool_use" in error_msg and "tool_result" in error_msg:
                # Corrupted checkpoint, start a fresh thread
                config["configurable"]["thread_id"] = uuid.uuid4().hex
                print("\nFeed Sentry: Sorry, I lost track of our conversation. Please try again.\n")
            else:
                print(f"\nFeed Sentry: Sorry, I encountered an error: {error_msg}\n")


async def main() -> None:
    """Initialize the components, start polling, and run the chat loop."""
    settings = load_settings()
    configure_logging(settings.log_level)

    app = FeedSentry(settings)
    app.open()

    agent = create_agent(build_tools(app), checkpoint_db_path=settings.checkpoint_path)

    # Each session gets a fresh thread to avoid corrupted checkpoint issues
    config = {"configurable": {"thread_id": uuid.uuid4().hex}}

    poller_task = asyncio.create_task(app.start())

    try:
        await chat_loop(agent, config)
    except KeyboardInterrupt:
        print("\nGoodbye!")
    finally:
        poller_task.cancel()
        try:
            await poller_task
        except asyncio.CancelledError:
            pass
        await app.stop()
        app.close()
        logger.info("Feed Sentry stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
