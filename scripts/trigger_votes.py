"""Queue an immediate vote collection for every active quest.

Usage:
    python scripts/trigger_votes.py
    python scripts/trigger_votes.py --short-id aB3xYz

The running worker (python main.py --daemon) picks the tasks up on its
next poll. Quests that already moved on ignore the extra trigger.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from quest.config import load_config
from quest.errors import ConfigError
from quest.runtime import QuestRuntime
from quest.scheduler import COLLECT_VOTES


async def _trigger(runtime: QuestRuntime, short_id: str | None) -> int:
    async with runtime:
        quests = await runtime.store.list_active_quests()
        if short_id:
            quests = [q for q in quests if q.short_id == short_id]
        click.echo(f"Found {len(quests)} active quest(s)")
        for quest in quests:
            click.echo(f"  Triggering vote collection for {quest.short_id} (chapter {quest.current_chapter})")
            await runtime.queue.schedule(
                COLLECT_VOTES,
                {"quest_id": quest.id, "chapter_number": quest.current_chapter},
                delay=0,
            )
        return len(quests)


@click.command()
@click.option("--short-id", default=None, help="Only trigger this quest")
@click.option("--config-dir", type=click.Path(), default=None, help="Config directory")
def trigger_votes(short_id: str | None, config_dir: str | None) -> None:
    """Trigger vote collection now instead of waiting for the deadline."""

    try:
        cfg = load_config(config_dir)
        count = asyncio.run(_trigger(QuestRuntime(config=cfg, credentials=False), short_id))
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    if short_id and not count:
        click.echo(f"No active quest with short id {short_id}", err=True)
        sys.exit(1)
    click.echo("Done!")


if __name__ == "__main__":
    trigger_votes()
