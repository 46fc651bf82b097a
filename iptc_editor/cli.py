"""Command line entry point for IPTC Editor.

    iptc-editor serve [--host HOST] [--port PORT]
    iptc-editor caption photo.jpg [--direct] [--add KW ...] [--remove N ...]

`caption` runs the whole flow for one file: read existing metadata,
generate a caption and keywords (through the relay, or directly with a
locally stored key), apply edits, and write <prefix><name> next to the
original or into --output-dir.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path
from typing import Optional

from iptc_editor.captioner import CaptionClient
from iptc_editor.config import Settings, get_settings
from iptc_editor.credentials import FileCredentialStore
from iptc_editor.metadata import extract_metadata, identify_image
from iptc_editor.session import EditSession

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iptc-editor",
        description="Generate AP-style captions and keywords and embed them in photos",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the relay and editor API")
    serve.add_argument("--host", default=None, help="Bind address (default from settings)")
    serve.add_argument("--port", type=int, default=None, help="Port (default from settings)")

    caption = sub.add_parser("caption", help="Caption one photo and write the result")
    caption.add_argument("file", type=Path, help="JPEG to caption")
    caption.add_argument(
        "--direct",
        action="store_true",
        help="Call the provider directly with a locally stored key instead of the relay",
    )
    caption.add_argument("--relay-url", default=None, help="Relay endpoint (default from settings)")
    caption.add_argument("--caption", default=None, help="Replace the generated caption")
    caption.add_argument("--add", nargs="+", default=[], metavar="KW", help="Keywords to add")
    caption.add_argument(
        "--remove", nargs="+", type=int, default=[], metavar="N",
        help="Positions (0-based, as listed) of keywords to remove",
    )
    caption.add_argument("--output-dir", type=Path, default=None, help="Where to write the result")
    caption.add_argument("--dry-run", action="store_true", help="Print the result without writing")
    return parser


async def caption_file(
    path: Path,
    client: CaptionClient,
    settings: Settings,
    caption: Optional[str] = None,
    add: tuple[str, ...] | list[str] = (),
    remove: tuple[int, ...] | list[int] = (),
) -> EditSession:
    """Run extraction, generation and edits for one file.

    Removals refer to positions in the merged list and are applied before
    additions, highest position first.
    """
    data = path.read_bytes()
    existing = extract_metadata(data)
    generated = await client.generate(data, existing, media_type=identify_image(data))

    session = EditSession(path.name, data, keyword_limit=settings.keyword_limit)
    session.apply(existing, generated)
    for index in sorted(set(remove), reverse=True):
        session.remove_keyword(index)
    for keyword in add:
        session.add_keyword(keyword)
    if caption is not None:
        session.set_caption(caption)
    return session


def _print_session(session: EditSession) -> None:
    print(f"Caption: {session.caption}")
    print(f"Keywords ({len(session.keywords)}/{session.keyword_limit}):")
    for i, keyword in enumerate(session.keywords):
        print(f"  [{i}] {keyword}")


def _run_caption(args: argparse.Namespace, settings: Settings) -> int:
    if args.direct:
        client = CaptionClient.direct(
            settings,
            FileCredentialStore(settings.credential_path),
            prompt_for_key=getpass.getpass,
        )
    else:
        client = CaptionClient.via_relay(settings, url=args.relay_url)

    session = asyncio.run(
        caption_file(
            args.file, client, settings,
            caption=args.caption, add=args.add, remove=args.remove,
        )
    )
    _print_session(session)
    if args.dry_run:
        return 0

    filename, data = session.export(settings.download_prefix)
    out_dir = args.output_dir or args.file.parent
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / filename
    out_path.write_bytes(data)
    print(f"Saved {out_path}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    if args.command == "serve":
        import uvicorn

        from iptc_editor.api import create_app

        uvicorn.run(
            create_app(settings),
            host=args.host or settings.host,
            port=args.port or settings.port,
            log_level="info",
        )
        return 0

    try:
        return _run_caption(args, settings)
    except Exception as e:
        logger.debug("caption failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
