import asyncio, sys
from typing import Any, List, Optional, Sequence, Tuple

Choice = Tuple[str, Any, Optional[str]]  # label, value, description


async def _readline() -> str:
    # the peer's stdio is piped separately, so stdin is the operator's terminal
    line = await asyncio.to_thread(sys.stdin.readline)
    if not line:
        raise EOFError
    return line.rstrip("\n").strip()


async def ask(message: str) -> str:
    print(f"{message}\n> ", end="", flush=True)
    return await _readline()


async def choose(message: str, choices: Sequence[Choice]) -> Any:
    """Numbered menu. A number picks that entry; any other text is returned as typed."""
    print(f"\n{message}")
    for i, (label, _value, description) in enumerate(choices, 1):
        print(f"  {i}. {label}" + (f" - {description}" if description else ""))
    answer = await ask("(Type a number or a name and press Enter)")
    try:
        n = int(answer)
        if 1 <= n <= len(choices):
            return choices[n - 1][1]
    except ValueError:
        pass
    for label, value, _ in choices:
        if answer == label:
            return value
    return answer


async def confirm(message: str, default: bool = True) -> bool:
    hint = "Y/n" if default else "y/N"
    answer = (await ask(f"{message} [{hint}]")).lower()
    if not answer:
        return default
    return answer in ("y", "yes")


async def review(text: str, question: str = "Would you like to run the above prompt?") -> bool:
    """Show text the model is about to receive and let the operator veto it."""
    print("\n=== PROMPT ===")
    print(text)
    return await confirm(question)


def menu_labels(items: List[str]) -> List[Choice]:
    return [(item, item, None) for item in items]
