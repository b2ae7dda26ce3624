#!/usr/bin/env python3
"""
practice-call: live voice sales-call practice against a Gemini client persona.

  practice-call --scenario tech-startup-ceo --feedback
  practice-call --client-role CFO --client-persona Curious ...
  practice-call --coach ~/Audio/practice-call/sessions/<id>/feedback.json
  practice-call --list-devices

Ctrl-C (or saying "End call" and letting the client hang up) ends the call.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from audio_capture import CaptureConstraints, list_input_devices
from config import CONFIG_FILE, get_api_key, load_config
from errors import ConfigurationError, FeedbackError
from feedback import GeminiFeedbackGenerator, build_coaching_instruction, load_feedback, save_feedback
from gemini_live import GeminiLiveProvider
from live_session import CallResult, ConnectionState, LiveConversation
from scenarios import PRESET_SCENARIOS, Scenario, build_simulation_instruction, load_scenario
from transcript import SPEAKER_LABELS, format_transcript

logger = logging.getLogger("practice_call")

_SCENARIO_FLAGS = ("consultant_role", "lead_source", "client_role",
                   "client_persona", "industry", "objection_style")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live voice sales-call practice")
    parser.add_argument("--config", type=Path, default=CONFIG_FILE, help="Config file (JSON)")
    parser.add_argument("--list-devices", action="store_true", help="List capture sources and exit")
    parser.add_argument("--device", default=None, help="Capture source name (default: config / AEC source)")
    parser.add_argument("--scenario", choices=sorted(PRESET_SCENARIOS), help="Preset scenario")
    parser.add_argument("--scenario-file", type=Path, help="Scenario JSON file")
    for flag in _SCENARIO_FLAGS:
        parser.add_argument("--" + flag.replace("_", "-"), dest=flag, default=None)
    parser.add_argument("--coach", type=Path, metavar="FEEDBACK_JSON",
                        help="Run a coaching session about saved feedback instead of a call")
    parser.add_argument("--no-record", action="store_true", help="Do not record the call")
    parser.add_argument("--feedback", action="store_true", help="Generate feedback after the call")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def resolve_scenario(args) -> Scenario:
    if args.scenario_file:
        scenario = load_scenario(args.scenario_file)
    else:
        scenario = PRESET_SCENARIOS[args.scenario or "tech-startup-ceo"]
    overrides = {f: getattr(args, f) for f in _SCENARIO_FLAGS if getattr(args, f)}
    if overrides:
        scenario = Scenario(**{**scenario.to_dict(), **overrides})
    return scenario


def print_devices() -> int:
    devices = list_input_devices()
    if devices is None:
        print("Could not list capture sources (is pactl installed?)", file=sys.stderr)
        return 1
    for device in devices:
        print(f"{device.id:<60} {device.state:<10} {device.sample_spec}")
    return 0


async def run_call(conversation: LiveConversation, connect_timeout: float) -> CallResult:
    """Run one call until the user or the remote side ends it."""
    loop = asyncio.get_running_loop()
    connected = asyncio.Event()
    finished = asyncio.Event()
    printed = 0

    def on_state(state: ConnectionState):
        print(f"[{state.value}]", flush=True)
        if state is ConnectionState.CONNECTED:
            connected.set()
        elif state in (ConnectionState.CLOSED, ConnectionState.ERROR):
            connected.set()
            finished.set()

    def on_transcript(messages):
        nonlocal printed
        final = [m for m in messages if not m.is_partial]
        if len(final) < printed:
            printed = 0
        for message in final[printed:]:
            print(f"{SPEAKER_LABELS[message.speaker]}: {message.text}", flush=True)
        printed = len(final)

    conversation.on_state_change = on_state
    conversation.on_transcript = on_transcript

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, conversation.end_session)
    try:
        await conversation.start_session()
        try:
            await asyncio.wait_for(connected.wait(), connect_timeout)
        except asyncio.TimeoutError:
            logger.error("No answer from the remote model after %.0fs", connect_timeout)
            conversation.end_session()
        await finished.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    return conversation.finish_call()


def main() -> int:
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.list_devices:
        return print_devices()

    config = load_config(args.config)
    scenario = None
    if args.coach:
        instruction = build_coaching_instruction(load_feedback(args.coach))
        recording = False
    else:
        scenario = resolve_scenario(args)
        instruction = build_simulation_instruction(scenario)
        recording = config["recording_enabled"] and not args.no_record

    provider = GeminiLiveProvider(api_key=get_api_key(), model=config["model"])
    conversation = LiveConversation(
        instruction,
        provider,
        recording_enabled=recording,
        audio_device_id=args.device or config["audio_device"],
        voice_name=config["voice"],
        constraints=CaptureConstraints(),
        aec_source=config["aec_source"],
        mic_sample_rate=config["mic_sample_rate"],
        recordings_dir=Path(config["recordings_dir"]).expanduser(),
        log_dir=Path(config["log_dir"]).expanduser(),
    )

    result = asyncio.run(run_call(conversation, config["connect_timeout"]))

    if result.error:
        print(f"Call failed: {result.error}", file=sys.stderr)
    if result.recording:
        print(f"Recording: {result.recording.url}")

    if scenario is None or not args.feedback:
        return 1 if result.error else 0
    if not result.transcript:
        print("Nothing was said; skipping feedback.")
        return 1 if result.error else 0

    print("\n" + format_transcript(result.transcript))
    try:
        generator = GeminiFeedbackGenerator(model=config["feedback_model"])
        feedback = generator.generate(scenario, result.transcript)
    except (ConfigurationError, FeedbackError) as e:
        print(str(e), file=sys.stderr)
        return 1

    path = Path(config["log_dir"]).expanduser() / conversation.session.id / "feedback.json"
    save_feedback(feedback, path)
    print(f"\nScore: {feedback.score:g}/10")
    for strength in feedback.strengths:
        print(f"  + {strength}")
    for item in feedback.improvements:
        print(f"  - {item.point}")
    print(f"Feedback saved to {path} (use --coach to discuss it)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
