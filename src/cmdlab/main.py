"""CLI entrypoint for the simulated GPU cluster command lab."""

from __future__ import annotations

import argparse
import logging
import sqlite3
from collections.abc import Callable

from .config import load_settings
from .help_text import format_command_help
from .labs import Lab
from .models import CATEGORIES
from .service import LabService, LabSession

InputFn = Callable[[str], str]
PrintFn = Callable[[str], None]
BACK_COMMANDS = {":back", ":b"}
FLOW_EXIT_COMMANDS = {":quit", ":exit", ":q"}
MENU_QUIT_COMMANDS = {"q"}
MENU_BACK_COMMANDS = {"b"}

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"


class QuitApp(Exception):
    """Signal immediate app exit from nested menu flows."""


def _service() -> LabService:
    """Create app service from environment settings."""
    return LabService(load_settings())


def run(argv: list[str] | None = None) -> int:
    """Run the CLI application."""
    parser = argparse.ArgumentParser(prog="cmdlab", description="Simulated GPU cluster command lab")
    parser.add_argument("command", nargs="?", default="play", choices=["play", "help"])
    parser.add_argument("topic", nargs="?", help="command name for `help`")
    args = parser.parse_args(argv)

    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    if args.command == "help":
        return help_command(args.topic)
    return play_shell()


def help_command(topic: str | None, print_fn: PrintFn = print) -> int:
    """Print reference help for one command."""
    service = _service()
    try:
        if not topic:
            print_fn("Available commands: " + ", ".join(service.store.names()))
            return 0
        definition = service.store.get(topic)
        if definition is None:
            print_fn(f"No reference entry for '{topic}'.")
            return 1
        print_fn(format_command_help(definition))
        return 0
    finally:
        service.close()


def play_shell(input_fn: InputFn = input, print_fn: PrintFn = print) -> int:
    """Run persistent menu-driven shell."""
    service = _service()
    try:
        selected = _select_profile(service, input_fn, print_fn)
        if selected is None:
            return 0
        profile_id, profile_name = selected
        try:
            while True:
                print_fn("\n=== Command Lab ===")
                print_fn(f"Profile: {profile_name}")
                due = service.due_reviews(profile_id)
                if due:
                    print_fn("Review due: " + ", ".join(family.name for family in due))
                print_fn("1) Free terminal")
                print_fn("2) Labs")
                print_fn("3) Tier status")
                print_fn("4) Command reference")
                print_fn("5) Record quiz score")
                print_fn("b) Back")
                print_fn("q) Quit")
                choice = input_fn("Choose: ").strip().lower()

                if choice == "1":
                    _terminal_flow(service, profile_id, input_fn, print_fn)
                elif choice == "2":
                    _labs_flow(service, profile_id, input_fn, print_fn)
                elif choice == "3":
                    _status_flow(service, profile_id, print_fn)
                elif choice == "4":
                    _reference_flow(service, input_fn, print_fn)
                elif choice == "5":
                    _quiz_flow(service, profile_id, input_fn, print_fn)
                elif choice in MENU_BACK_COMMANDS:
                    switched = _select_profile(service, input_fn, print_fn)
                    if switched is None:
                        return 0
                    profile_id, profile_name = switched
                elif choice in MENU_QUIT_COMMANDS:
                    return 0
                else:
                    print_fn("Invalid choice.")
        except QuitApp:
            return 0
    finally:
        service.close()


def _select_profile(service: LabService, input_fn: InputFn, print_fn: PrintFn) -> tuple[int, str] | None:
    """Select existing profile or create new one."""
    while True:
        profiles = service.list_profiles()
        print_fn("\n=== Profiles ===")
        if profiles:
            for idx, profile in enumerate(profiles, start=1):
                print_fn(f"{idx}) {profile.name}")
        else:
            print_fn("No profiles yet.")
        print_fn("n) New profile")
        print_fn("d) Delete profile")
        print_fn("q) Quit")

        choice = input_fn("Select profile: ").strip().lower()
        if choice in MENU_QUIT_COMMANDS:
            return None
        if choice == "n":
            name = input_fn("New profile name: ").strip()
            if not name:
                print_fn("Profile name is required.")
                continue
            try:
                created = service.create_profile(name)
            except sqlite3.IntegrityError:
                print_fn("Could not create profile (name may already exist).")
                continue
            return (created.id, created.name)
        if choice == "d":
            _delete_profile_flow(service, input_fn, print_fn)
            continue

        if choice.isdigit():
            index = int(choice) - 1
            if 0 <= index < len(profiles):
                selected = profiles[index]
                return (selected.id, selected.name)

        print_fn("Invalid profile selection.")


def _delete_profile_flow(service: LabService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Delete a profile with explicit confirmation safeguard."""
    profiles = service.list_profiles()
    if not profiles:
        print_fn("No profiles available to delete.")
        return

    print_fn("\nDelete profile")
    for idx, profile in enumerate(profiles, start=1):
        print_fn(f"{idx}) {profile.name}")
    print_fn("b) Back")
    choice = input_fn("Choose profile to delete: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if not choice.isdigit() or not (0 <= int(choice) - 1 < len(profiles)):
        print_fn("Invalid choice.")
        return

    target = profiles[int(choice) - 1]
    print_fn(f"WARNING: This permanently deletes profile '{target.name}' and all lab and tier progress.")
    confirm = input_fn("Type YES to confirm deletion: ").strip()
    if confirm != "YES":
        print_fn("Deletion cancelled.")
        return
    if service.delete_profile(target.id):
        print_fn(f"Deleted profile '{target.name}'.")
    else:
        print_fn("Profile was not found.")


def _prompt(session: LabSession) -> str:
    return "root# " if session.context.is_elevated else "user$ "


def _terminal_flow(service: LabService, profile_id: int, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Free-form terminal against a fresh simulated system."""
    session = service.open_session(profile_id)
    print_fn("\n=== Terminal ===")
    print_fn("Type `help` for commands, :state to inspect the system, :undo to step back, :b to leave.")
    while True:
        line = input_fn(_prompt(session)).strip()
        if not _handle_session_line(session, line, print_fn):
            return


def _handle_session_line(session: LabSession, line: str, print_fn: PrintFn) -> bool:
    """Handle one line typed into a session; returns False when the user leaves."""
    lowered = line.lower()
    if lowered in BACK_COMMANDS:
        return False
    if lowered in FLOW_EXIT_COMMANDS:
        raise QuitApp()
    if lowered == ":state":
        for domain, fields in sorted(session.state.items()):
            print_fn(f"{domain}:")
            for name, value in sorted(fields.items()):
                print_fn(f"  {name} = {value}")
        return True
    if lowered == ":undo":
        print_fn("Reverted last change." if session.undo() else "Nothing to undo.")
        return True

    outcome = session.run_line(line)
    if outcome.message:
        print_fn(outcome.message)
    return True


def _labs_flow(service: LabService, profile_id: int, input_fn: InputFn, print_fn: PrintFn) -> None:
    """List labs with unlock status and run the chosen one."""
    states = service.list_lab_states(profile_id)
    if not states:
        print_fn("No labs available.")
        return

    print_fn("\n=== Labs ===")
    id_width = max(len("Lab"), max(len(state.lab.id) for state in states))
    family_width = max(len("Family"), max(len(state.lab.family) for state in states))
    header = f"{'#':>2} {'Lab':<{id_width}} {'Family':<{family_width}} {'Tier':>4} {'Steps':>7} Title"
    print_fn(header)
    print_fn("-" * len(header))
    for idx, state in enumerate(states, start=1):
        steps = f"{state.completed_steps}/{len(state.lab.steps)}"
        title = state.lab.title if state.unlocked else f"{state.lab.title} (locked)"
        print_fn(
            f"{idx:>2} "
            f"{state.lab.id:<{id_width}} "
            f"{state.lab.family:<{family_width}} "
            f"{state.lab.tier:>4} "
            f"{steps:>7} "
            f"{title}"
        )
    print_fn("b) Back")
    print_fn("q) Quit")
    choice = input_fn("Choose lab: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if choice in MENU_QUIT_COMMANDS:
        raise QuitApp()
    if not choice.isdigit() or not (0 <= int(choice) - 1 < len(states)):
        print_fn("Invalid choice.")
        return

    selected = states[int(choice) - 1]
    if not selected.unlocked:
        print_fn(service.lab_requirement(profile_id, selected.lab))
        return
    _run_lab(service, profile_id, selected.lab, input_fn, print_fn)


def _run_lab(service: LabService, profile_id: int, lab: Lab, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Walk through lab steps until complete or the user leaves."""
    session = service.open_session(profile_id)
    session.start_lab(lab)
    print_fn(f"\nStarting lab: {lab.title}")
    if lab.description:
        print_fn(lab.description)
    print_fn("Type :hint for a hint, :status for progress, :b to leave the lab.")

    announced = None
    while True:
        step = session.current_step
        if step is None:
            print_fn("Lab complete. Progress saved.")
            return
        if step.id != announced:
            print_fn(f"\nStep {session.step_index + 1}/{len(lab.steps)}: {step.title}")
            if step.description:
                print_fn(step.description)
            announced = step.id

        line = input_fn(_prompt(session)).strip()
        lowered = line.lower()
        if lowered == ":hint":
            print_fn(session.reveal_hint())
            continue
        if lowered == ":status":
            completion = session.step_completion()
            if completion is not None:
                print_fn(f"Step progress: {completion.percentage}% (pass at {completion.passing_score}%)")
            print_fn(session.hint_status())
            continue
        if lowered in BACK_COMMANDS:
            print_fn("Leaving lab. Progress saved.")
            return
        if not _handle_session_line(session, line, print_fn):
            return

        completion = session.advance_if_passed()
        if completion is not None and completion.passed:
            print_fn(f"Step passed ({completion.percentage}%).")


def _status_flow(service: LabService, profile_id: int, print_fn: PrintFn) -> None:
    """Print tier status per command family."""
    print_fn("\n=== Tier Status ===")
    rows = service.tier_statuses(profile_id)
    if not rows:
        print_fn("No command families defined.")
        return
    id_width = max(len("Family"), max(len(row.family.id) for row in rows))
    header = f"{'Family':<{id_width}} {'Tier':>4} Next"
    print_fn(header)
    print_fn("-" * len(header))
    for row in rows:
        next_text = row.next_requirement or "all tiers unlocked"
        print_fn(f"{row.family.id:<{id_width}} {row.highest_tier:>4} {next_text}")


def _reference_flow(service: LabService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Browse command help by category."""
    print_fn("\n=== Command Reference ===")
    for category in sorted(CATEGORIES):
        definitions = service.store.by_category(category)
        if definitions:
            print_fn(f"{category}: {', '.join(definition.command for definition in definitions)}")
    print_fn("b) Back")
    name = input_fn("Command name: ").strip()
    if name.lower() in MENU_BACK_COMMANDS:
        return
    definition = service.store.get(name)
    if definition is None:
        print_fn(f"No reference entry for '{name}'.")
        return
    print_fn(format_command_help(definition))


def _quiz_flow(service: LabService, profile_id: int, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Record an externally taken quiz score for one family."""
    families = sorted(service.families.values(), key=lambda item: item.id)
    print_fn("\n=== Record Quiz Score ===")
    for idx, family in enumerate(families, start=1):
        print_fn(f"{idx}) {family.id} - {family.name}")
    print_fn("b) Back")
    choice = input_fn("Choose family: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if not choice.isdigit() or not (0 <= int(choice) - 1 < len(families)):
        print_fn("Invalid choice.")
        return
    family = families[int(choice) - 1]
    raw_score = input_fn("Score (0-100): ").strip()
    try:
        result = service.record_quiz(profile_id, family.id, float(raw_score))
    except ValueError:
        print_fn("Score must be a number between 0 and 100.")
        return
    status = "passed" if result.passed else "not passed"
    print_fn(f"{family.name} quiz: best {result.score:.0f}% ({status}, {result.attempts} attempts)")


def main_entry() -> None:
    """Console script entrypoint."""
    raise SystemExit(run())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
