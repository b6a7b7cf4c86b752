#!/usr/bin/env python3
"""Runner script: summarize and draft replies for the configured inbox."""

import asyncio

from llm.src.client import LLMClient
from shared.logging import configure_logging, get_logger

from triage.src.config import load_config, resolve_path
from triage.src.generator import DraftGenerator
from triage.src.memory import load_writing_style
from triage.src.pipeline import TriagePipeline

log = get_logger("triage", "run_triage")


async def main():
    config = load_config()
    log_dir = config["logging"].get("dir")
    configure_logging(
        config["logging"].get("level", "INFO"),
        resolve_path(log_dir) if log_dir else None,
    )

    client = LLMClient.from_config(config)
    if not client.is_configured:
        log.error("triage.run.no_api_key")
        print("ANTHROPIC_API_KEY is not set (environment or .env)")
        return

    style = load_writing_style(config["style"].get("path"))
    pipeline, source = TriagePipeline.from_config(
        config, DraftGenerator(client, style=style), style=style
    )
    print(f"\n  Inbox Triage")
    print(f"  ============")
    print(f"  {len(pipeline.tracker)} unread emails\n")

    await pipeline.start()
    await pipeline.wait_idle()

    while (item := pipeline.next_item()) is not None:
        print(f"From:    {item.email.sender}")
        print(f"Subject: {item.email.subject}")
        if item.error:
            print(f"Error:   {item.error}")
        else:
            print(f"Summary: {item.summary}")
        if item.draft:
            print(f"\n{item.draft.draft_content}")
        print("-" * 60)

    pipeline.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
