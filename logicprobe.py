#!/usr/bin/env python3
"""
logicprobe.py - driver for probe_scanner (business logic analysis)
==================================================================

Turns captured HTTP requests into business-logic test suggestions and learns
from the outcome of each test.

Features:
- Request compression and classification (auth, payment, refund, ...)
- Tiered cache: exact match, near duplicate, known pattern context
- Per-project memory of patterns, confirmed exploits and recent tests
- Rich-powered UI with detailed file logging

Example
~~~~~~~
```bash
python logicprobe.py project shop --name "Shop" --url shop.example.com --business-type ecommerce
python logicprobe.py analyze -p shop -r request.txt
python logicprobe.py feedback -p shop --type success --action "amount=-1" --result "refund issued" --request-id 3
python logicprobe.py stats -p shop
```
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path

from logging_setup import setup_logging, extract_target_name, RichOutput
from models.pydantic_models import FeedbackType, Project, TestResult
from tools.config import DB_PATH, USE_OPENAI
from tools.errors import ProbeError


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def cmd_project(args, store, output: RichOutput):
    project = await store.create_project(Project(
        id=args.project_id,
        name=args.name or args.project_id,
        url=args.url or "",
        business_type=args.business_type,
    ))
    if not args.quiet:
        output.print_message(f"📦 Project [bold]{project.id}[/bold] ready ({project.business_type})")
    return project.model_dump()


async def cmd_analyze(args, store, output: RichOutput):
    from probe_scanner import analyze_raw_request
    from security_agents import SecurityAgentRunner, EmbeddingClient
    from tools.compressor import RequestCompressor

    raw_request = args.request.read_text()
    log_path = setup_logging(raw_request)
    target_name = extract_target_name(raw_request)
    start_time = time.time()

    if not args.quiet:
        output.print_banner()
        output.print_target_info(target_name, args.project, log_path)

    compressor = RequestCompressor()
    embedder = EmbeddingClient() if USE_OPENAI and not args.no_embeddings else None

    try:
        if not args.quiet:
            with output.scanning_phase("📋 Phase 1: Compression", "Parsing and classifying the request..."):
                parsed = compressor.parse(raw_request)
            output.print_parsed_request(parsed)

            with output.scanning_phase("🧠 Phase 2: Analysis", "Checking cache and consulting the analyst..."):
                result = await analyze_raw_request(
                    raw_request,
                    args.project,
                    store,
                    runner=SecurityAgentRunner(),
                    embedder=embedder,
                    compressor=compressor,
                    use_cache=not args.no_cache,
                    force_new_analysis=args.force,
                )
        else:
            result = await analyze_raw_request(
                raw_request,
                args.project,
                store,
                runner=SecurityAgentRunner(),
                embedder=embedder,
                compressor=compressor,
                use_cache=not args.no_cache,
                force_new_analysis=args.force,
            )
    except ProbeError as exc:
        output.print_error(str(exc), log_path)
        sys.exit(1)

    if not args.quiet:
        output.print_analysis(result)
        output.print_summary(log_path, time.time() - start_time, target_name)
    return result.model_dump(mode="json")


async def cmd_feedback(args, store, output: RichOutput):
    from probe_scanner import submit_feedback
    from tools.context_builder import NextStepAdvisor

    setup_logging(target_name=args.project)
    result = await submit_feedback(
        args.project,
        TestResult(
            suggestion=args.suggestion or "",
            user_action=args.action,
            result=args.result,
            feedback_type=FeedbackType(args.type),
            pattern_learned=args.pattern,
            request_id=args.request_id,
        ),
        store,
        advisor=NextStepAdvisor(seed=args.seed),
    )
    if not args.quiet:
        output.print_feedback(result)
    return result.model_dump(mode="json")


async def cmd_stats(args, store, output: RichOutput):
    from probe_scanner import get_learning_stats
    from tools.cache import TieredCache
    from tools.errors import NotFoundError

    project = await store.get_project(args.project)
    if project is None:
        raise NotFoundError(f"Project not found: {args.project}")
    stats = await TieredCache(store, args.project).get_cache_stats()
    learning = await get_learning_stats(store, args.project)
    if not args.quiet:
        output.print_stats(project, stats)
    return {
        "project": project.model_dump(),
        "cache": stats.model_dump(),
        "learning": learning.model_dump(),
    }


async def cmd_prune(args, store, output: RichOutput):
    from tools.context_builder import ContextAssembler

    removed = await ContextAssembler(store, args.project).prune_context()
    if not args.quiet:
        output.print_message(
            f"🧹 Removed {removed['patterns']} patterns and {removed['memories']} success memories"
        )
    return removed


async def cmd_cleanup(args, store, output: RichOutput):
    from tools.cache import TieredCache

    removed = await TieredCache(store, args.project).cleanup_expired_cache()
    if not args.quiet:
        output.print_message(f"🧹 Removed {removed} expired cache entries")
    return {"removed": removed}


COMMANDS = {
    "project": cmd_project,
    "analyze": cmd_analyze,
    "feedback": cmd_feedback,
    "stats": cmd_stats,
    "prune": cmd_prune,
    "cleanup": cmd_cleanup,
}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Business logic analysis of captured HTTP requests.")
    parser.add_argument("--db", type=Path, default=Path(DB_PATH), help="SQLite database path")
    parser.add_argument("-o", "--output", type=Path, help="Save JSON result to file")
    parser.add_argument("--quiet", "-q", action="store_true", help="Quiet mode - print JSON only")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("project", help="Create or update a project")
    p.add_argument("project_id")
    p.add_argument("--name")
    p.add_argument("--url", help="Target domain")
    p.add_argument("--business-type", default="unknown")

    p = sub.add_parser("analyze", help="Analyze a raw HTTP request")
    p.add_argument("-p", "--project", required=True)
    p.add_argument("-r", "--request", type=Path, required=True, help="Raw HTTP request file")
    p.add_argument("--no-cache", action="store_true", help="Skip the cache lookup")
    p.add_argument("--force", action="store_true", help="Force a new analysis")
    p.add_argument("--no-embeddings", action="store_true", help="Disable the similarity tier")

    p = sub.add_parser("feedback", help="Report the outcome of a suggested test")
    p.add_argument("-p", "--project", required=True)
    p.add_argument("--type", choices=[t.value for t in FeedbackType], required=True)
    p.add_argument("--action", required=True, help="What was tried")
    p.add_argument("--result", required=True, help="What happened")
    p.add_argument("--suggestion", help="Suggestion that was followed")
    p.add_argument("--pattern", help="Name of a pattern discovered by this test")
    p.add_argument("--request-id", type=int, help="Id returned by 'analyze'")
    p.add_argument("--seed", type=int, help="Seed for next-step suggestions")

    for name, help_text in (
        ("stats", "Show cache and learning statistics"),
        ("prune", "Trim project memory"),
        ("cleanup", "Delete expired cache entries"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("-p", "--project", required=True)

    return parser


def main():
    args = build_parser().parse_args()
    output = RichOutput()

    async def async_main():
        from tools.store import SQLiteStore

        store = SQLiteStore(args.db)
        try:
            return await COMMANDS[args.command](args, store, output)
        finally:
            await store.close()

    try:
        result = asyncio.run(async_main())
    except ProbeError as exc:
        output.print_error(str(exc))
        sys.exit(1)

    output_data = json.dumps(result, indent=2, default=str)
    if args.output:
        args.output.write_text(output_data)
        if not args.quiet:
            output.print_message(f"\n💾 Full results saved to: [cyan]{args.output}[/cyan]", style="bold blue")
    elif args.quiet:
        print(output_data)


if __name__ == "__main__":
    main()
