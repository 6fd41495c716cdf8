import os, sys, asyncio, argparse
from dataclasses import replace
from pathlib import Path

from agent import ChatModel, render_outcome, run_query
from chat import open_session
from config import Settings, configure_logging
from protocol.errors import TransportError

TEMPLATE = "# Results\n\n**Query:** {query}\n\n{body}\n"


def to_md(query: str, text: str) -> str:
    return TEMPLATE.format(query=query, body=text)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Send one free-text query to the user MCP server")
    ap.add_argument("--out", help="Also save the answer as Markdown (e.g., results.md)")
    ap.add_argument("--data", help="User store file (default from USER_DATA_PATH)")
    ap.add_argument("--timeout", type=float, help="Per-request timeout in seconds")
    ap.add_argument("--yes", action="store_true", help="Serve sampling requests without asking")
    # everything after flags is treated as the query
    ap.add_argument("message", nargs="*", help="Free-text query")
    return ap


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    if args.data:
        settings = replace(settings, user_data_path=Path(args.data))
    if args.timeout:
        settings = replace(settings, request_timeout=args.timeout)
    if args.yes:
        settings = replace(settings, confirm_sampling=False)
    configure_logging(settings)

    query = " ".join(args.message).strip() or "List every user in the database."
    model = ChatModel(settings)
    with open(os.devnull, "w") as devnull:
        try:
            async with open_session(settings, model, errlog=sys.stderr if settings.debug else devnull) as session:
                outcome = await run_query(session, model, query)
        except TransportError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    text = render_outcome(outcome)
    print(text)
    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            f.write(to_md(query, text))
        print(f"Saved: {args.out}")
    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
