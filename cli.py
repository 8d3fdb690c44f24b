"""
Command Line Interface for SessionLens
======================================

This module runs every enabled analysis pipeline over a session transcript
and prints live progress followed by the ranked smart actions.

Usage:
------
    # Analyze a transcript file
    python cli.py session.txt

    # Analyze text directly, only two pipelines
    python cli.py --text "Therapist: How was your week?..." --pipelines safety,billing

    # Offline demo with canned results
    python cli.py session.txt --mock --json

Exit codes:
-----------
    0    at least one pipeline succeeded
    1    every pipeline failed, or the run could not start
    130  interrupted
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from config import Settings, get_settings
from core.orchestrator import create_orchestrator
from exceptions import SessionLensError
from models import (
    AnalysisContext,
    PipelineConfig,
    PipelineKind,
    PipelineStatus,
    RunStatusTable,
    SmartAction,
)


# ANSI colors for terminal output
class Colors:
    """ANSI color codes for pretty terminal output."""
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


STATUS_COLORS = {
    PipelineStatus.IDLE: Colors.ENDC,
    PipelineStatus.LOADING: Colors.BLUE,
    PipelineStatus.RETRYING: Colors.YELLOW,
    PipelineStatus.SUCCESS: Colors.GREEN,
    PipelineStatus.ERROR: Colors.RED,
}


def colorize(text: str, color: str) -> str:
    """Add color to text if terminal supports it."""
    if sys.stdout.isatty():
        return f"{color}{text}{Colors.ENDC}"
    return text


def print_banner():
    banner = """
    +--------------------------------------------------+
    |   SessionLens                                    |
    |   Session transcript -> insights -> actions      |
    +--------------------------------------------------+
    """
    print(colorize(banner, Colors.CYAN))


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser.
    """
    parser = argparse.ArgumentParser(
        prog="sessionlens",
        description="Analyze a therapy session transcript with concurrent AI pipelines",
        epilog="Example: python cli.py session.txt --pipelines safety,progress",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Positional argument: transcript file
    parser.add_argument(
        "transcript_file",
        nargs="?",  # Optional (can use --text instead)
        help="Path to a plain-text session transcript"
    )

    parser.add_argument(
        "--text", "-t",
        type=str,
        help="Analyze text directly instead of a transcript file"
    )

    # Session identity
    parser.add_argument(
        "--session-id",
        type=str,
        help="Session identifier (default: generated)"
    )

    parser.add_argument(
        "--patient-id",
        type=str,
        default="cli-patient",
        help="Patient identifier (default: cli-patient)"
    )

    parser.add_argument(
        "--session-type",
        type=str,
        help="Session type for billing, e.g. psychotherapy or intake"
    )

    parser.add_argument(
        "--duration",
        type=int,
        help="Session duration in minutes"
    )

    parser.add_argument(
        "--goal",
        action="append",
        default=[],
        dest="goals",
        help="Treatment goal (repeat for several)"
    )

    # Pipeline options
    parser.add_argument(
        "--pipelines", "-p",
        type=str,
        help=f"Comma-separated pipelines to run ({', '.join(k.value for k in PipelineKind)}). Default: all"
    )

    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use canned analysis results instead of calling Ollama"
    )

    parser.add_argument(
        "--ollama-model",
        type=str,
        help="Ollama model name (overrides config)"
    )

    # Output format
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output the final status table and actions as JSON"
    )

    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Minimal output"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output with debug info"
    )

    parser.add_argument(
        "--no-banner",
        action="store_true",
        help="Don't show the banner"
    )

    return parser


def setup_logging_for_cli(verbose: bool, quiet: bool) -> None:
    """Configure logging based on CLI flags."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s"
    )


def parse_pipelines(value: Optional[str]) -> Optional[List[PipelineKind]]:
    """
    Parse the --pipelines flag.

    Raises:
        ValueError: An unknown pipeline name
    """
    if not value:
        return None
    kinds = []
    for name in value.split(","):
        name = name.strip().lower()
        if name:
            kinds.append(PipelineKind(name))
    return kinds


def build_pipeline_config(
    settings: Settings,
    kinds: Optional[List[PipelineKind]]
) -> Dict[PipelineKind, PipelineConfig]:
    """Settings defaults, with every kind not selected disabled."""
    if kinds is None:
        return dict(settings.pipelines)
    return {
        kind: config.model_copy(update={"enabled": kind in kinds})
        for kind, config in settings.pipelines.items()
    }


def read_transcript(parsed_args) -> str:
    if parsed_args.text:
        return parsed_args.text
    return Path(parsed_args.transcript_file).read_text(encoding="utf-8")


class ProgressPrinter:
    """
    Status subscriber that prints one line per pipeline change.

    Only status changes and progress milestones are printed, not every
    repeated snapshot.
    """

    def __init__(self):
        self._seen: Dict[PipelineKind, Tuple[PipelineStatus, int, int]] = {}

    def __call__(self, table: RunStatusTable) -> None:
        for kind in table.enabled:
            state = table.pipelines[kind]
            key = (state.status, state.progress_percent, state.attempt)
            if self._seen.get(kind) == key:
                continue
            self._seen[kind] = key

            status_str = f"[{state.status.value.upper():^10}]"
            line = f"{colorize(status_str, STATUS_COLORS[state.status])} {kind.value:<9} {state.progress_percent:>3}%"
            if state.attempt:
                line += f" (attempt {state.attempt + 1})"
            if state.error is not None:
                line += f" - {state.error.message}"
            print(f"{line}   overall {table.overall_progress}%")


def summarize_result(kind: PipelineKind, result) -> str:
    """One-line human summary of a pipeline result."""
    if kind == PipelineKind.SAFETY:
        risk = result.risk_assessment
        return f"risk {risk.overall_risk.value} ({risk.risk_score:g}/100), {len(result.alerts)} alert(s)"
    if kind == PipelineKind.BILLING:
        codes = ", ".join(f"{c.code} ({c.confidence:.0%})" for c in result.all_codes)
        return f"codes: {codes or 'none'}"
    if kind == PipelineKind.PROGRESS:
        rating = result.overall_treatment_effectiveness.rating
        return f"effectiveness {rating:g}/10, {len(result.goal_progress)} goal(s) tracked"
    if kind == PipelineKind.NOTE:
        return f"{len(result.sections)} note section(s)"
    return "done"


def print_report(table: RunStatusTable, actions: List[SmartAction], settings: Settings) -> None:
    print(colorize("\n--- PIPELINES ---\n", Colors.HEADER))
    for kind in table.enabled:
        state = table.pipelines[kind]
        if state.status == PipelineStatus.SUCCESS:
            print(f"  {colorize('OK ', Colors.GREEN)} {kind.value:<9} {summarize_result(kind, state.result)}")
        else:
            message = state.error.message if state.error else state.status.value
            print(f"  {colorize('ERR', Colors.RED)} {kind.value:<9} {message}")

    print(colorize("\n--- ACTIONS ---\n", Colors.HEADER))
    if not actions:
        print("  No actions suggested")
    for action in actions:
        color = Colors.RED if action.priority >= settings.action_urgency_threshold else Colors.CYAN
        confirm = " [confirm]" if action.requires_confirmation else ""
        print(
            f"  {colorize(f'P{action.priority:<2}', color)} {action.title}{confirm} "
            f"(~{action.estimated_time_minutes} min)"
        )
        if action.description:
            print(f"       {action.description}")


async def run_analysis(
    context: AnalysisContext,
    settings: Settings,
    use_mock: bool,
    show_progress: bool
) -> Tuple[RunStatusTable, List[SmartAction]]:
    """Start a run, wait for it to finish and derive its actions."""
    orchestrator = create_orchestrator(settings=settings, use_mock=use_mock)
    run = orchestrator.start(context)
    if show_progress:
        orchestrator.subscribe(run, on_update=ProgressPrinter())
    try:
        table = await run.wait()
    except asyncio.CancelledError:
        run.cancel()
        raise
    return table, orchestrator.get_actions(table)


def main(args: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        args: Command line arguments (uses sys.argv if None)

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    setup_logging_for_cli(parsed_args.verbose, parsed_args.quiet or parsed_args.json)

    if not parsed_args.no_banner and not parsed_args.quiet and not parsed_args.json:
        print_banner()

    if not parsed_args.transcript_file and not parsed_args.text:
        parser.error("Either transcript_file or --text is required")

    try:
        kinds = parse_pipelines(parsed_args.pipelines)
    except ValueError as e:
        parser.error(f"--pipelines: {e}")

    try:
        # Apply CLI overrides BEFORE loading settings (get_settings() is cached)
        if parsed_args.ollama_model:
            os.environ["SESSIONLENS_OLLAMA_MODEL"] = parsed_args.ollama_model
        settings = get_settings()

        context = AnalysisContext(
            session_id=parsed_args.session_id or f"cli-{uuid.uuid4().hex[:8]}",
            patient_id=parsed_args.patient_id,
            transcript_text=read_transcript(parsed_args),
            requester_id="cli",
            config=build_pipeline_config(settings, kinds),
            session_type=parsed_args.session_type,
            duration_minutes=parsed_args.duration,
            treatment_goals=parsed_args.goals,
        )

        if not parsed_args.quiet and not parsed_args.json:
            print(colorize(f"\nAnalyzing session {context.session_id}...\n", Colors.CYAN))

        table, actions = asyncio.run(run_analysis(
            context,
            settings,
            use_mock=parsed_args.mock or settings.use_mock_analysis,
            show_progress=not (parsed_args.quiet or parsed_args.json)
        ))

        if parsed_args.json:
            print(json.dumps({
                "status": table.model_dump(mode="json"),
                "actions": [action.model_dump(mode="json") for action in actions]
            }, indent=2))
        else:
            print_report(table, actions, settings)

        if not table.kinds_with_status(PipelineStatus.SUCCESS):
            if not parsed_args.json:
                print(colorize("\n❌ Every pipeline failed", Colors.RED))
            return 1

        if not parsed_args.quiet and not parsed_args.json:
            print(colorize("\n✅ Done!\n", Colors.GREEN))
        return 0

    except SessionLensError as e:
        print(colorize(f"\n❌ Error: {e.message}", Colors.RED))
        if parsed_args.verbose and e.details:
            print(colorize(f"   Details: {e.details}", Colors.YELLOW))
        return 1

    except OSError as e:
        print(colorize(f"\n❌ Cannot read transcript: {e}", Colors.RED))
        return 1

    except KeyboardInterrupt:
        print(colorize("\n\n⚠️  Interrupted by user", Colors.YELLOW))
        return 130


if __name__ == "__main__":
    sys.exit(main())
