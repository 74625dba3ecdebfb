from __future__ import annotations

import json
import logging
import os
import shlex
from typing import Any, Dict, List, Optional

from db import SupabaseError, get_db, ping
from graph import build_consult_graph, run_consultation
from health import health_report
from heart_rate import SAMPLE_RATE, estimate, generate_ppg_signal
from repos import DiagnosisSessionRepo, InquiryRepo, NotFoundError
from session_utils import consult_state_from_payload
from voice_commands import VoiceCommandDispatcher
from wizard import DiagnosisWizard

HISTORY_N = int(os.getenv("CLI_HISTORY_N", "10"))


def print_help() -> None:
    print(
        "\nCommands:\n"
        "  user <user_id>              # act as this user (omit for guest)\n"
        "  history [n]\n"
        "  trends [days]\n"
        "  session <session_id>\n"
        "  consult <wizard.json> [--no-save]\n"
        "  wizard next|back|reset|goto <step>|skip <tongue|face|body>\n"
        "  pulse <bpm> [seconds]       # estimate BPM from a synthetic PPG trace\n"
        "  voice <transcript...>\n"
        "  health\n"
        "  quit\n"
    )


def format_sessions(rows: List[Dict[str, Any]]) -> None:
    for r in rows:
        score = r.get("overall_score")
        print(f"{r.get('created_at', '')[:19]}  {r.get('id')}  score={score if score is not None else '-'}  {r.get('primary_diagnosis') or ''}")


def _load_json(path: str) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        print(f"Could not read {path}: {exc}")
        return None
    if not isinstance(payload, dict):
        print("Wizard file must hold a JSON object.")
        return None
    return payload


def main() -> None:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING").upper())
    print("Starting TCM diagnosis CLI...")
    ping()

    db = get_db()
    session_repo = DiagnosisSessionRepo(db)
    inquiry_repo = InquiryRepo(db)
    consult_graph = build_consult_graph(db)
    wizard = DiagnosisWizard()
    user_id: Optional[str] = None

    print_help()

    while True:
        try:
            raw = input("\n> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nExiting.")
            return

        if not raw:
            continue

        try:
            parts = shlex.split(raw)
        except ValueError as exc:
            print(f"Could not parse command: {exc}")
            continue
        cmd = parts[0].lower()

        if cmd in ("quit", "exit"):
            print("Bye.")
            return

        if cmd in ("help", "?"):
            print_help()
            continue

        if cmd == "user":
            user_id = parts[1] if len(parts) >= 2 else None
            print(f"Acting as {'user ' + user_id if user_id else 'guest'}.")
            continue

        if cmd in ("history", "trends", "session") and not user_id:
            print("No user selected. Use: user <user_id>")
            continue

        if cmd == "history":
            n = HISTORY_N
            if len(parts) >= 2:
                try:
                    n = int(parts[1])
                except ValueError:
                    print("history [n] where n is an integer")
                    continue
            rows, total = session_repo.history(user_id, limit=n)
            if not rows:
                print("(no sessions)")
            else:
                print(f"{len(rows)} of {total} session(s):")
                format_sessions(rows)
            print(f"Last symptoms: {inquiry_repo.last_symptoms(user_id)}")
            continue

        if cmd == "trends":
            try:
                days = int(parts[1]) if len(parts) >= 2 else 30
            except ValueError:
                print("trends [days] where days is an integer")
                continue
            trends = session_repo.trends(user_id, days)
            print(json.dumps(trends.model_dump(), indent=2, ensure_ascii=False))
            continue

        if cmd == "session":
            if len(parts) < 2:
                print("Usage: session <session_id>")
                continue
            try:
                doc = session_repo.get(parts[1], user_id)
            except NotFoundError as exc:
                print(str(exc))
                continue
            print(json.dumps(doc, indent=2, ensure_ascii=False, default=str))
            continue

        if cmd == "consult":
            if len(parts) < 2:
                print("Usage: consult <wizard.json> [--no-save]")
                continue
            payload = _load_json(parts[1])
            if payload is None:
                continue
            if "--no-save" in parts[2:]:
                payload["save"] = False
            state = consult_state_from_payload(payload, user_id=user_id, is_guest=user_id is None)
            try:
                result = run_consultation(consult_graph, state)
            except SupabaseError as exc:
                print(f"Consultation failed: {exc}")
                continue
            if result.error_code:
                print(f"[warn] AI error: {result.error_code}")
            print(json.dumps(result.report or {}, indent=2, ensure_ascii=False))
            print(f"Overall score: {result.overall_score} (model={result.model_id})")
            if result.session_doc:
                print(f"Saved session: {result.session_doc.get('id') or result.session_doc.get('session_token')}")
            if result.persist_error:
                print(f"[warn] Not saved: {result.persist_error}")
            continue

        if cmd == "wizard":
            action = parts[1].lower() if len(parts) >= 2 else ""
            try:
                if action == "next":
                    wizard.next()
                elif action == "back":
                    wizard.back()
                elif action == "reset":
                    wizard.reset()
                elif action == "goto" and len(parts) >= 3:
                    wizard.go_to(parts[2])
                elif action == "skip" and len(parts) >= 3:
                    wizard.skip_analysis(parts[2])
                else:
                    print("Usage: wizard next|back|reset|goto <step>|skip <tongue|face|body>")
                    continue
            except (ValueError, KeyError) as exc:
                print(f"Invalid wizard transition: {exc}")
                continue
            snap = wizard.snapshot()
            print(f"Step: {snap['step']} ({snap['progress']}%), stepper={snap['stepper_step']}")
            continue

        if cmd == "pulse":
            try:
                bpm = float(parts[1])
                seconds = float(parts[2]) if len(parts) >= 3 else 10
            except (IndexError, ValueError):
                print("Usage: pulse <bpm> [seconds]")
                continue
            reading = estimate(generate_ppg_signal(bpm, SAMPLE_RATE, seconds), SAMPLE_RATE)
            print(
                f"BPM: {reading['bpm']}  quality: {reading['signal_quality']}  "
                f"stable: {reading['is_stable']}  frames: {reading['frame_count']}"
            )
            continue

        if cmd == "voice":
            text = raw[len("voice") :].strip()
            if not text:
                print("Usage: voice <transcript...>")
                continue
            dispatcher = VoiceCommandDispatcher(speaker=lambda line: print(f"(speaks) {line}"))
            match = dispatcher.handle_result(text, confidence=1.0)
            if match is None:
                print("No command recognized.")
            else:
                print(f"Command: {match.command.id} (confidence {match.confidence:.2f})")
            for action in dispatcher.actions:
                print(f"Action: {action}")
            continue

        if cmd == "health":
            print(json.dumps(health_report(db), indent=2))
            continue

        print("Unknown command.")
        print_help()


if __name__ == "__main__":
    main()
