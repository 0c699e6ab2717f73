"""
Render the booking transition table as a Mermaid state diagram.

Usage:
    python scripts/generate_state_diagrams.py                          # print to stdout
    python scripts/generate_state_diagrams.py --write docs/STATES.md   # refresh the marked block in a file
    python scripts/generate_state_diagrams.py --check docs/STATES.md   # fail when the file is out of date (CI)
"""
import argparse
import re
import sys
from pathlib import Path

# Make the app package importable when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.db.models.booking import BookingStatus
from app.state_machine.booking_states import (
    BOOKING_ACTIONS,
    COMPENSATING_ACTIONS,
    TERMINAL_STATUSES,
    Actor,
)

START_MARKER = "<!-- STATE_DIAGRAMS_START -->"
END_MARKER = "<!-- STATE_DIAGRAMS_END -->"

STATUS_LABELS: dict[BookingStatus, str] = {
    BookingStatus.PENDING: "Requested",
    BookingStatus.ACCEPTED: "Accepted, authorizing",
    BookingStatus.PAYMENT_AUTHORIZED: "Hold placed",
    BookingStatus.PAYMENT_CONFIRMED: "Hold confirmed",
    BookingStatus.PAID: "Captured, in escrow",
    BookingStatus.IN_TRANSIT: "Picked up",
    BookingStatus.DELIVERED: "Delivered",
    BookingStatus.COMPLETED: "Paid out",
    BookingStatus.REJECTED: "Rejected",
    BookingStatus.CANCELLED: "Cancelled",
    BookingStatus.DISPUTED: "Disputed",
}

# Fixed order keeps the output stable across runs
_ACTOR_ORDER = [Actor.SENDER, Actor.RECEIVER, Actor.ADMIN, Actor.SYSTEM]


def _edge_label(action, actors) -> str:
    who = "/".join(a.value for a in _ACTOR_ORDER if a in actors)
    return f"{action.value} ({who})"


def generate_booking_diagram() -> str:
    """stateDiagram-v2 of every (status, action) entry of the table"""
    lines: list[str] = ["stateDiagram-v2"]

    for status in BookingStatus:
        lines.append(f"    {status.value} : {STATUS_LABELS.get(status, status.value)}")
    lines.append("")
    lines.append(f"    [*] --> {BookingStatus.PENDING.value}")
    lines.append("")

    for (source, action), transition in BOOKING_ACTIONS.items():
        label = _edge_label(action, transition.actors)
        if action in COMPENSATING_ACTIONS:
            label += " compensation"
        lines.append(f"    {source.value} --> {transition.target.value} : {label}")

    lines.append("")
    for status in BookingStatus:
        if status in TERMINAL_STATUSES:
            lines.append(f"    {status.value} --> [*]")

    return "\n".join(lines)


def format_as_markdown(diagram: str) -> str:
    return f"#### Booking lifecycle\n\n```mermaid\n{diagram}\n```\n"


def _section(markdown_content: str) -> str:
    return f"{START_MARKER}\n\n{markdown_content}\n{END_MARKER}"


def update_file(path: Path, markdown_content: str) -> None:
    """Replace the marked block in ``path`` (appending it when absent)"""
    content = path.read_text(encoding="utf-8") if path.exists() else ""
    new_section = _section(markdown_content)

    if START_MARKER in content:
        pattern = re.compile(
            re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER),
            re.DOTALL,
        )
        content = pattern.sub(lambda _: new_section, content)
    else:
        content = (content + "\n\n" if content else "") + new_section + "\n"

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    print(f"Updated: {path}")


def check_file(path: Path, markdown_content: str) -> bool:
    """True when the marked block in ``path`` matches the current table"""
    if not path.exists():
        print(f"Error: {path} does not exist")
        return False

    content = path.read_text(encoding="utf-8")
    pattern = re.compile(
        re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER),
        re.DOTALL,
    )
    match = pattern.search(content)
    if not match:
        print(f"Error: no diagram block in {path}")
        return False

    if match.group(0) == _section(markdown_content):
        print("Diagrams are in sync with the transition table")
        return True

    print(f"Error: diagrams in {path} are out of date")
    print(f"Run: python scripts/generate_state_diagrams.py --write {path}")
    return False


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Render the booking transition table as Mermaid"
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--write", type=Path, help="refresh the diagram block in this markdown file")
    group.add_argument("--check", type=Path, help="exit 1 when this markdown file is out of date")
    args = parser.parse_args()

    markdown = format_as_markdown(generate_booking_diagram())

    if args.check:
        sys.exit(0 if check_file(args.check, markdown) else 1)
    elif args.write:
        update_file(args.write, markdown)
    else:
        print(markdown)


if __name__ == "__main__":
    main()
