"""Start a quest from a post on X.

Usage:
    python scripts/start_quest.py --message-id 1790000000000000000 --seed "What if Rome never fell?"
    python scripts/start_quest.py --message-id 1790... --seed "..." --author someone --now

Without --now the request is queued for the worker; with --now the first
chapter is generated and posted from this process.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from quest.config import load_config
from quest.errors import ConfigError, QuestError
from quest.narrator import NarrativeError
from quest.runtime import QuestRuntime
from quest.scheduler import START_QUEST
from xsocial import XApiError


async def _enqueue(runtime: QuestRuntime, payload: dict) -> str:
    async with runtime:
        return await runtime.queue.schedule(START_QUEST, payload, delay=0)


async def _start_now(runtime: QuestRuntime, payload: dict):
    async with runtime:
        return await runtime.engine.start_quest(**payload)


@click.command()
@click.option("--message-id", required=True, help="Id of the post that asked for a quest")
@click.option("--seed", required=True, help="Text the quest is built from")
@click.option("--author", default="", help="Handle of the requester")
@click.option("--reply-to", default=None, help="Post to reply to (defaults to --message-id)")
@click.option("--conversation-id", default=None, help="Conversation the post belongs to")
@click.option("--in-reply-to", default="", help="Post the request itself replies to")
@click.option("--now", is_flag=True, help="Start immediately instead of queueing")
@click.option("--config-dir", type=click.Path(), default=None, help="Config directory")
def start_quest(
    message_id: str,
    seed: str,
    author: str,
    reply_to: str | None,
    conversation_id: str | None,
    in_reply_to: str,
    now: bool,
    config_dir: str | None,
) -> None:
    """Start (or queue) a new quest."""

    try:
        cfg = load_config(config_dir)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    payload = {
        "origin_message_id": message_id,
        "reply_target": reply_to or message_id,
        "seed_text": seed,
        "author_handle": author.lstrip("@"),
        "conversation_id": conversation_id,
        "in_reply_to": in_reply_to,
    }

    if not now:
        task_id = asyncio.run(_enqueue(QuestRuntime(config=cfg, credentials=False), payload))
        click.echo(f"Queued start request as task {task_id}")
        return

    try:
        result = asyncio.run(_start_now(QuestRuntime(config=cfg), payload))
    except (ConfigError, QuestError, NarrativeError, XApiError) as e:
        click.echo(f"Could not start quest: {e}", err=True)
        sys.exit(1)

    if result.started:
        click.echo(f"Quest {result.short_id} started ({result.quest_id})")
    else:
        click.echo(f"No quest started: {result.reason}")


if __name__ == "__main__":
    start_quest()
