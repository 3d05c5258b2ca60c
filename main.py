"""Entry point for the quest bot.

Usage:
    python main.py --daemon            # Recover, then run the task worker
    python main.py --recover           # Run one recovery pass and exit
    python main.py --status            # Show running and finished quests
    python main.py --status --quest ID # Show one quest's chapters and votes
    python main.py --daemon --verbose  # Verbose logging
"""

from __future__ import annotations

import asyncio
import logging
import sys

import click

from quest.config import load_config
from quest.errors import ConfigError, QuestError
from quest.runtime import QuestRuntime


def _setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s — %(name)s — %(levelname)s — %(message)s"

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=fmt, handlers=handlers)

    # Quiet down noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


async def _run_daemon(runtime: QuestRuntime) -> None:
    async with runtime:
        await runtime.queue.requeue_stale()
        report = await runtime.recovery.run()
        click.echo(f"  {report.summary()}")
        click.echo("Quest worker is running.\n")
        await runtime.queue.run_forever()


async def _run_recover(runtime: QuestRuntime) -> None:
    async with runtime:
        report = await runtime.recovery.run()
        click.echo(f"\n  {report.summary()}")
        for quest_id, error in report.failed.items():
            click.echo(f"    ✗ {quest_id}: {error}")
        click.echo()


async def _show_status(runtime: QuestRuntime, short_id: str | None = None) -> None:
    async with runtime:
        if short_id:
            await _show_quest(runtime, short_id)
            return
        for label, listing in (
            ("Active", runtime.queries.list_active),
            ("Completed", runtime.queries.list_completed),
        ):
            page = await listing(limit=10)
            click.echo(f"\n  {label} quests: {page['total']}")
            for quest in page["quests"]:
                deadline = quest.chapter_deadline.strftime("%H:%M:%S") if quest.chapter_deadline else "-"
                click.echo(
                    f"    {quest.short_id:<10} {page['phases'][quest.id]:<20} "
                    f"deadline={deadline}  {quest.state.canon_title or quest.seed_text[:40]}"
                )
            if page["has_more"]:
                click.echo(f"    ... {page['total'] - len(page['quests'])} more")
        counts = await runtime.queue.get_counts()
        click.echo(
            f"\n  Tasks: {counts['pending']} pending, {counts['running']} running, "
            f"{counts['done']} done, {counts['failed']} failed\n"
        )


async def _show_quest(runtime: QuestRuntime, short_id: str) -> None:
    detail = await runtime.queries.get_by_short_id(short_id)
    quest = detail["quest"]
    click.echo(f"\n  {quest.short_id}  {detail['phase']}  {quest.state.canon_title or quest.seed_text[:60]}")
    click.echo(f"  Started by @{quest.author_handle or '?'} in conversation {quest.conversation_id}")
    for chapter in detail["chapters"]:
        votes = detail["votes"][chapter.chapter_number]
        posted = chapter.posted_message_id or "not posted"
        chosen = f"option {chapter.chosen_option} won" if chapter.chosen_option else "no result yet"
        click.echo(f"    Chapter {chapter.chapter_number}: {posted}, {len(votes)} vote(s), {chosen}")
    click.echo()


@click.command()
@click.option("--daemon", is_flag=True, help="Recover overdue quests, then run the task worker")
@click.option("--recover", is_flag=True, help="Run one recovery pass and exit")
@click.option("--status", is_flag=True, help="Show quest and task queue status")
@click.option("--quest", "short_id", default=None, help="With --status, show one quest by its short id")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.option("--config-dir", type=click.Path(), default=None, help="Config directory")
def main(
    daemon: bool,
    recover: bool,
    status: bool,
    short_id: str | None,
    verbose: bool,
    config_dir: str | None,
) -> None:
    """Quest bot — crowd-voted branching stories on X."""

    if sum((daemon, recover, status)) != 1:
        click.echo("Specify exactly one of --daemon, --recover or --status. Use --help for details.")
        sys.exit(1)

    try:
        cfg = load_config(config_dir)
        log_file = cfg.get("storage", {}).get("log_file")
        _setup_logging(verbose=verbose, log_file=log_file)

        runtime = QuestRuntime(config=cfg, credentials=not status)
        if status:
            asyncio.run(_show_status(runtime, short_id))
        elif recover:
            asyncio.run(_run_recover(runtime))
        else:
            asyncio.run(_run_daemon(runtime))
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except QuestError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nQuest worker stopped.")


if __name__ == "__main__":
    main()
