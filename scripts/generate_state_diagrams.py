"""
Render Mermaid diagrams from the conversation transition table.

Usage:
    python scripts/generate_state_diagrams.py                # print to stdout
    python scripts/generate_state_diagrams.py --write        # write docs/STATE_DIAGRAMS.md
    python scripts/generate_state_diagrams.py --check        # fail if the docs file is stale (CI)
"""
import argparse
import sys
from collections import defaultdict
from pathlib import Path
from typing import Iterable

# Make the app package importable when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.state_machine.states import (
    ConversationState,
    INITIAL_STATE,
    STATE_DEFINITIONS,
    TERMINAL_STATES,
)
from app.state_machine.transitions import StateTransition, TRANSITIONS

DIAGRAMS_PATH = Path(__file__).resolve().parent.parent / "docs" / "STATE_DIAGRAMS.md"

CONVERSATION_LABELS: dict[str, str] = {
    state.value: definition.description for state, definition in STATE_DEFINITIONS.items()
}


def _sanitize_id(state_value: str) -> str:
    """Mermaid ids may not contain dots or dashes."""
    return state_value.replace(".", "_").replace("-", "_")


def generate_mermaid_from_transitions(
    transitions: Iterable[StateTransition],
    labels: dict[str, str],
    initial_state: ConversationState = INITIAL_STATE,
    terminal_states: Iterable[ConversationState] = TERMINAL_STATES,
) -> str:
    """
    Build a stateDiagram-v2 from a transition list.

    Edges between the same pair of states are merged, their triggers
    joined with " / " in declaration order.
    """
    edges: dict[tuple[str, str], list[str]] = defaultdict(list)
    all_states: set[str] = {initial_state.value}
    for transition in transitions:
        source = transition.from_state.value
        target = transition.to_state.value
        all_states.update((source, target))
        triggers = edges[(source, target)]
        if transition.trigger.value not in triggers:
            triggers.append(transition.trigger.value)

    lines: list[str] = ["stateDiagram-v2"]

    for state_value in sorted(all_states):
        label = labels.get(state_value, state_value)
        lines.append(f"    {_sanitize_id(state_value)} : {label}")

    lines.append("")
    lines.append(f"    [*] --> {_sanitize_id(initial_state.value)}")
    lines.append("")

    for (source, target), triggers in edges.items():
        lines.append(f"    {_sanitize_id(source)} --> {_sanitize_id(target)} : {' / '.join(triggers)}")

    terminal = sorted(state.value for state in terminal_states)
    if terminal:
        lines.append("")
        for state_value in terminal:
            lines.append(f"    {_sanitize_id(state_value)} --> [*]")

    return "\n".join(lines)


def generate_order_status_diagram() -> str:
    """OrderStatus lifecycle as driven by the conversation."""
    return """stateDiagram-v2
    pending : Created at order confirmation
    completed : Payment verified
    cancelled : Payment timed out

    [*] --> pending
    pending --> completed : order_completed
    pending --> cancelled : payment_timeout
    completed --> [*]
    cancelled --> [*]"""


def generate_all_diagrams() -> dict[str, str]:
    return {
        "Conversation (ConversationState)": generate_mermaid_from_transitions(
            TRANSITIONS, CONVERSATION_LABELS,
        ),
        "Order (OrderStatus)": generate_order_status_diagram(),
    }


def format_diagrams_as_markdown(diagrams: dict[str, str]) -> str:
    sections: list[str] = ["# State Diagrams\n", "Generated by `scripts/generate_state_diagrams.py`. Do not edit.\n"]
    for name, mermaid_code in diagrams.items():
        sections.append(f"## {name}\n")
        sections.append(f"```mermaid\n{mermaid_code}\n```\n")
    return "\n".join(sections)


def write_diagrams(markdown_content: str, path: Path = DIAGRAMS_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(markdown_content, encoding="utf-8")
    print(f"Updated: {path}")


def check_diagrams(markdown_content: str, path: Path = DIAGRAMS_PATH) -> bool:
    """True when the diagrams file matches the current transition table."""
    if not path.exists():
        print(f"Error: {path} not found")
        return False

    if path.read_text(encoding="utf-8") == markdown_content:
        print("Diagrams are in sync")
        return True

    print("Error: diagrams are out of date")
    print("Run: python scripts/generate_state_diagrams.py --write")
    return False


def main() -> None:
    parser = argparse.ArgumentParser(description="Render Mermaid diagrams from the state machine")
    parser.add_argument("--write", action="store_true", help=f"write {DIAGRAMS_PATH.name}")
    parser.add_argument("--check", action="store_true", help="exit 1 if the diagrams file is stale")
    args = parser.parse_args()

    markdown = format_diagrams_as_markdown(generate_all_diagrams())

    if args.check:
        sys.exit(0 if check_diagrams(markdown) else 1)
    elif args.write:
        write_diagrams(markdown)
    else:
        print(markdown)


if __name__ == "__main__":
    main()
