"""
Interview Rehearsal — Entry Point
==================================
Loads environment variables, validates API keys, and runs one live
interview session from the console.

  Enter      finish the session and print the report
  m + Enter  toggle microphone mute
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

# ── Setup logging ─────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("interview_rehearsal")

# ── Load .env ─────────────────────────────────────────────────────────────────
env_path = Path(__file__).parent / ".env"
if env_path.exists():
    from dotenv import load_dotenv
    load_dotenv(env_path)
    logger.info(f"Loaded .env from {env_path}")
else:
    logger.warning(".env file not found. Make sure GEMINI_API_KEY is set as an environment variable.")


def validate_env() -> bool:
    """Validate required API keys are present."""
    required = {
        "GEMINI_API_KEY": "https://aistudio.google.com/apikey",
    }
    missing = [f"  {key}  →  {url}" for key, url in required.items() if not os.environ.get(key)]
    if missing:
        print("\n⚠  Missing API Keys:\n")
        for m in missing:
            print(m)
        print("\nCreate a .env file with these values or set them as environment variables.\n")
    return not missing


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rehearse a live job interview with an AI interviewer.")
    parser.add_argument("--role", required=True, help="Target role, e.g. 'Backend Engineer'")
    parser.add_argument("--company", default=None, help="Optional target organization")
    parser.add_argument("--seniority", default="Mid-Level", help="Junior, Mid-Level, Senior or Lead")
    parser.add_argument("--focus", action="append", default=[], help="Focus topic (repeatable)")
    parser.add_argument("--no-report", action="store_true", help="Skip the post-session evaluation")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def _print_cue(cue):
    print(f"   [{cue.sentiment.value.upper()}] {cue.cue}")


def _print_turn(turn):
    print(f"{turn.speaker.label}: {turn.text}")


async def run_session(args: argparse.Namespace) -> int:
    from evaluation import EvaluationClient, EvaluationError
    from session_controller import SessionController, SessionState
    from settings import EngineSettings, SessionConfig

    settings = EngineSettings.from_env()
    config = SessionConfig.create(args.role, args.seniority, args.focus, args.company)

    callbacks = {
        "on_turn": _print_turn,
        "on_visual_cue": _print_cue,
        "on_partial": lambda speaker, text: logger.debug(f"{speaker.label} (live): {text}"),
        "on_interrupted": lambda: logger.info("Interviewer interrupted"),
        "on_error": lambda msg: print(f"\n✖ {msg}\n"),
    }
    controller = SessionController(settings, callbacks)

    if not await controller.start(config):
        return 1
    print("\nSession live. Press Enter to finish, 'm' + Enter to toggle mute.\n")

    while controller.state is SessionState.OPEN:
        line = await asyncio.to_thread(sys.stdin.readline)
        if controller.state is not SessionState.OPEN:
            break
        if line.strip().lower() == "m":
            muted = controller.toggle_mute()
            print("   (muted)" if muted else "   (unmuted)")
            continue
        break

    failed = controller.state is SessionState.ERROR
    summary = await controller.finish()
    print(f"\nSession ended after {summary.duration} with {len(summary.turns)} turns.")
    if failed or args.no_report or not summary.turns:
        return 1 if failed else 0

    print("Synthesizing report...")
    try:
        analysis = await EvaluationClient(settings.api_key, settings.analysis_model).evaluate(
            config, summary.turns, summary.duration
        )
    except EvaluationError as e:
        logger.error(f"Evaluation failed: {e}")
        return 1

    print(f"\nOverall: {analysis.overall_score:.0f}  Clarity: {analysis.clarity:.0f}  "
          f"Confidence: {analysis.confidence:.0f}  Communication: {analysis.communication:.0f}  "
          f"Technical: {analysis.technical_knowledge:.0f}")
    for title, items in (("Strengths", analysis.strengths),
                         ("Weaknesses", analysis.weaknesses),
                         ("Recommendations", analysis.recommendations)):
        print(f"\n{title}:")
        for item in items:
            print(f"  - {item}")
    return 0


def main():
    args = parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    if not validate_env():
        sys.exit(1)
    try:
        sys.exit(asyncio.run(run_session(args)))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
