"""Rich-enhanced console output with file logging."""
import re
import time
import logging
from pathlib import Path
from typing import Optional
from contextlib import contextmanager

from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.table import Table
from rich.align import Align
from rich.rule import Rule
from rich.markdown import Markdown
from rich import box

from models.pydantic_models import (
    AnalysisResult,
    CacheStats,
    CacheTier,
    FeedbackResult,
    ParsedRequest,
    Project,
)


def extract_target_name(raw_request: str) -> str:
    """Extract target name from HTTP Host header."""
    host_match = re.search(r'^Host:\s*(.+)$', raw_request, re.MULTILINE | re.IGNORECASE)
    if not host_match:
        return "unknown_host"
    host = host_match.group(1).strip()
    host = re.sub(r':\d+$', '', host)  # Remove port
    host = re.sub(r'[^\w\.-]', '_', host)  # Replace special chars with underscore
    return host or "unknown_host"


def setup_logging(raw_request: str = "", target_name: Optional[str] = None) -> str:
    """Set up logging to file and return the log file path."""
    logs_dir = Path(".logs")
    logs_dir.mkdir(exist_ok=True)

    target_name = target_name or extract_target_name(raw_request)
    target_name = re.sub(r'[^\w\.-]', '_', target_name)

    epoch_time = int(time.time())
    log_path = logs_dir / f"{target_name}_{epoch_time}.log"

    # Clear any existing handlers
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_path, mode='w', encoding='utf-8'),
        ]
    )

    # Suppress verbose client logs
    for name in ("httpx", "httpcore", "openai", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return str(log_path)


TIER_STYLES = {
    CacheTier.L1: ("green", "⚡ L1 EXACT MATCH", "Cached analysis reused, no model call"),
    CacheTier.L2: ("cyan", "🔁 L2 NEAR DUPLICATE", "Similar request already analyzed"),
    CacheTier.L3: ("yellow", "🧩 L3 PATTERN CONTEXT", "Known patterns shortened the prompt"),
    CacheTier.MISS: ("magenta", "🆕 CACHE MISS", "Full analysis with project memory"),
}


class RichOutput:
    """Handle Rich console output while logging details to file."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def print_banner(self):
        banner_text = Text()
        banner_text.append("🧠 LogicProbe", style="bold blue")
        banner_text.append("\n")
        banner_text.append("   BUSINESS LOGIC ANALYZER", style="bold blue")

        panel = Panel(
            Align.center(banner_text),
            box=box.DOUBLE,
            border_style="bright_blue",
            padding=(1, 2)
        )
        self.console.print(panel)
        self.console.print()

    def print_target_info(self, target_name: str, project_id: str, log_path: str):
        table = Table(show_header=False, box=box.ROUNDED, border_style="cyan")
        table.add_column("Property", style="bold cyan", width=15)
        table.add_column("Value", style="white")

        table.add_row("🎯 Target", f"[bold white]{target_name}[/bold white]")
        table.add_row("📦 Project", project_id)
        table.add_row("📁 Log File", f"[dim]{log_path}[/dim]")
        table.add_row("⏰ Started", f"[green]{time.strftime('%H:%M:%S')}[/green]")

        self.console.print(table)
        self.console.print()

    @contextmanager
    def scanning_phase(self, phase_name: str, description: str):
        """Context manager for a phase with spinner."""
        with self.console.status(
            f"[bold blue]{phase_name}[/bold blue] - {description}",
            spinner="dots12",
            spinner_style="cyan"
        ):
            yield

        self.console.print(f"✅ [bold green]{phase_name}[/bold green] - Complete")

    def print_parsed_request(self, parsed: ParsedRequest):
        """Show what the compressor extracted from the request."""
        self.console.print(Rule("[bold cyan]Compressed Request[/bold cyan]"))

        table = Table(show_header=False, box=box.ROUNDED, border_style="cyan")
        table.add_column("Field", style="bold cyan", width=16)
        table.add_column("Value", style="white")

        table.add_row("Endpoint", f"{parsed.method} {parsed.endpoint}")
        table.add_row("Domain", parsed.domain or "[dim]unknown[/dim]")
        table.add_row("Category", f"[bold]{parsed.category.value}[/bold]")
        table.add_row("Patterns", ", ".join(parsed.patterns) or "[dim]none[/dim]")
        table.add_row("Attack vectors", ", ".join(parsed.attack_vectors[:5]))
        table.add_row(
            "Compression",
            f"{parsed.original_size} → {parsed.compressed_size} chars "
            f"([green]{parsed.compression_ratio * 100:.1f}%[/green])"
        )

        self.console.print(table)
        self.console.print()

    def print_analysis(self, result: AnalysisResult):
        color, title, subtitle = TIER_STYLES[result.cache_hit]
        status = f"[bold {color}]{title}[/bold {color}]\n[{color}]{subtitle}[/{color}]"
        if result.confidence is not None:
            status += f"\n[dim]confidence {result.confidence:.2f}[/dim]"
        self.console.print(Panel(status, border_style=color, box=box.ROUNDED))

        self.console.print(Panel(
            Markdown(result.analysis),
            title="[bold blue]💡 Suggested Tests[/bold blue]",
            border_style="blue"
        ))

        details = Table(show_header=False, box=box.SIMPLE, border_style="blue")
        details.add_column("Metric", style="bold blue", width=18)
        details.add_column("Value", style="white")
        if result.request_id is not None:
            details.add_row("🆔 Request id", str(result.request_id))
        details.add_row("🪙 Tokens saved", str(result.tokens_saved))
        if result.token_estimate:
            details.add_row("📏 Prompt tokens", f"~{result.token_estimate}")
        if result.similar_requests:
            details.add_row("🔗 Similar requests", str(result.similar_requests))
        self.console.print(details)
        self.console.print()

    def print_stats(self, project: Project, stats: CacheStats):
        self.console.print(Rule(f"[bold cyan]📊 {project.name or project.id}[/bold cyan]"))

        table = Table(box=box.ROUNDED, border_style="cyan")
        table.add_column("Tier", style="bold")
        table.add_column("Hits", justify="right")
        table.add_column("Tokens saved", justify="right")
        for tier_name in ("L1", "L2", "L3"):
            tier = getattr(stats, tier_name)
            table.add_row(tier_name, str(tier.hits), str(tier.tokens_saved))
        table.add_row(
            "[bold]Total[/bold]",
            f"[bold]{stats.total.hits}[/bold]",
            f"[bold]{stats.total.tokens_saved}[/bold]"
        )
        self.console.print(table)

        counters = Table(show_header=False, box=box.SIMPLE, border_style="blue")
        counters.add_column("Metric", style="bold blue", width=20)
        counters.add_column("Value", style="white", justify="right")
        counters.add_row("💰 Cost saved", f"${stats.total.cost_saved:.4f}")
        counters.add_row("📨 Requests analyzed", str(project.total_requests_analyzed))
        counters.add_row("🪙 Compression tokens", str(project.tokens_saved))
        counters.add_row("✅ Successes", f"[green]{project.success_count}[/green]")
        counters.add_row("🟡 Partials", f"[yellow]{project.partial_count}[/yellow]")
        counters.add_row("❌ Failures", f"[red]{project.failure_count}[/red]")
        self.console.print(counters)
        self.console.print()

    def print_feedback(self, result: FeedbackResult):
        stats = result.stats
        body = (
            f"[bold]Learning loop[/bold] #{result.learning_loop_id}\n"
            f"Success rate: [green]{stats.success_rate}%[/green] "
            f"({stats.success}/{stats.total}, {stats.partial} partial, {stats.failure} failed)"
        )
        if result.pruned:
            body += "\n[dim]Project memory pruned[/dim]"
        self.console.print(Panel(body, title="[bold green]📝 Feedback Recorded[/bold green]", border_style="green"))

        if result.next_suggestion:
            self.console.print(Panel(
                result.next_suggestion,
                title="[bold blue]➡️  Next Step[/bold blue]",
                border_style="blue"
            ))
        self.console.print()

    def print_summary(self, log_path: str, elapsed: float, target_name: str):
        self.console.print(Rule("[bold green]📋 Analysis Complete[/bold green]"))

        summary_table = Table(show_header=False, box=box.ROUNDED, border_style="bright_blue")
        summary_table.add_column("Metric", style="bold cyan", width=20)
        summary_table.add_column("Value", style="white")

        summary_table.add_row("🎯 Target", f"[bold]{target_name}[/bold]")
        summary_table.add_row("⏱️  Duration", f"[green]{elapsed:.1f} seconds[/green]")
        summary_table.add_row("📄 Detailed Logs", f"[dim]{log_path}[/dim]")
        summary_table.add_row("🕒 Completed", f"[green]{time.strftime('%H:%M:%S')}[/green]")

        self.console.print(summary_table)

    def print_message(self, message: str, style: str = "green"):
        self.console.print(f"[{style}]{message}[/{style}]")

    def print_error(self, error_msg: str, log_path: Optional[str] = None):
        error_panel = Panel(
            f"[bold red]❌ FAILED[/bold red]\n\n" +
            f"[red]{error_msg}[/red]",
            border_style="red",
            box=box.HEAVY
        )
        self.console.print(error_panel)

        if log_path:
            self.console.print(f"[dim]📄 Check detailed logs: {log_path}[/dim]")
