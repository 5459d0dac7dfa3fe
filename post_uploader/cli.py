"""Command line interface for post_uploader package."""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from rich.logging import RichHandler

from .cli_progress import (
    BatchProgressDisplay,
    _echo,
    _human_size,
    render_batch_summary,
    render_configuration_summary,
)
from .errors import PostUploaderError
from .models import BatchSummary, UploadConfig


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _setup_logging(debug: bool, silent: bool, log_level: Optional[str]) -> str:
    """
    Configure logging.

    Default behavior is silent unless --debug or --log-level is provided.
    Returns a string describing effective mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    logging.disable(logging.NOTSET)

    if silent or (not debug and not log_level):
        logging.disable(logging.CRITICAL)
        root_logger.setLevel(logging.CRITICAL + 1)
        return "silent"

    if debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, log_level.upper(), logging.INFO)

    handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    return logging.getLevelName(level)


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_env_file(path: Path, override: bool = False) -> None:
    if not path.exists():
        raise CLIError(f"env file not found: {path}")
    if not path.is_file():
        raise CLIError(f"env path is not a file: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"could not read env file {path}: {exc}") from exc

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = _strip_optional_quotes(value.strip())
        if override or key not in os.environ:
            os.environ[key] = value


def _resolve_default_env_file() -> Optional[Path]:
    default_env = Path(".env")
    return default_env if default_env.exists() and default_env.is_file() else None


def _load_posts(path: Path, gallery_id: Optional[str]) -> Tuple[List[Dict[str, Any]], str]:
    """
    Read a posts file.

    Accepts either a JSON list of {"post_id", "key", "asset"} objects or an
    object {"gallery_id": ..., "posts": [...]}. --gallery-id wins over the
    file's gallery_id.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CLIError(f"could not read posts file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise CLIError(f"posts file is not valid JSON: {exc}") from exc

    if isinstance(data, dict):
        posts = data.get("posts")
        gallery_id = gallery_id or data.get("gallery_id")
    else:
        posts = data
    if not isinstance(posts, list):
        raise CLIError("posts file must contain a list of posts")
    if not gallery_id:
        raise CLIError("gallery id missing (use --gallery-id)")
    return posts, str(gallery_id)


def _build_config(args: argparse.Namespace) -> UploadConfig:
    try:
        config = UploadConfig.from_env()
        overrides: Dict[str, Any] = {}
        if args.temp_dir:
            overrides["temp_dir"] = Path(args.temp_dir).expanduser()
        if args.records_dir:
            overrides["records_dir"] = Path(args.records_dir).expanduser()
        if args.parallel:
            overrides["max_parallel_uploads"] = args.parallel
        return dataclasses.replace(config, **overrides) if overrides else config
    except ValueError as exc:
        raise CLIError(f"invalid configuration: {exc}") from exc


def _build_manager(api_client, config: UploadConfig, assets_root: Optional[Path]):
    from .orchestrator import UploadManager
    from .services import FFmpegTranscoder, JSONRecordStore, LocalAssetResolver, TempFileStorage

    return UploadManager(
        resolver=LocalAssetResolver(root=assets_root),
        transcoder=FFmpegTranscoder(),
        api_client=api_client,
        record_store=JSONRecordStore(config.records_dir),
        temp_storage=TempFileStorage(config.temp_dir),
        config=config,
    )


async def _wait_batch(manager, session) -> BatchSummary:
    try:
        return await session.wait()
    except asyncio.CancelledError:
        # Ctrl+C: stop at the next chunk boundary, keep records for resume
        await manager.cancel()
        raise


async def _run_batch_command(args: argparse.Namespace, config: UploadConfig) -> int:
    from .services import HTTPUploadClient

    api_url = args.api_url or os.getenv("POST_UPLOADER_API_URL")
    if not api_url:
        raise CLIError("API URL missing (use --api-url or POST_UPLOADER_API_URL)")

    posts: List[Dict[str, Any]] = []
    gallery_id = ""
    if args.command == "upload":
        posts, gallery_id = _load_posts(Path(args.posts).expanduser(), args.gallery_id)

    async with HTTPUploadClient(
        api_url,
        token=os.getenv("POST_UPLOADER_TOKEN"),
        client_id=os.getenv("POST_UPLOADER_CLIENT_ID"),
        client_secret=os.getenv("POST_UPLOADER_CLIENT_SECRET"),
        timeout=int(config.chunk_timeout),
    ) as api:
        manager = _build_manager(api, config, args.assets_root)
        display = BatchProgressDisplay(live=not args.silent)
        display.attach(manager)

        if args.command == "upload":
            session = await manager.start_new_upload(posts, gallery_id)
        elif args.command == "resume":
            session = await manager.check_cached_uploads()
        else:
            session = await manager.retry_failed_uploads()

        if session is None:
            _echo("Nothing to upload.")
            return 0

        summary = await _wait_batch(manager, session)
        display.stop()
        render_batch_summary(summary)
        if summary.error:
            _echo(f"[red]ERROR:[/red] {summary.error}")
        return 0 if summary.all_success else 1


async def _run_clear(config: UploadConfig, assets_root: Optional[Path]) -> int:
    manager = _build_manager(None, config, assets_root)
    removed = await manager.clear_cached_uploads()
    _echo(f"Removed {removed} cached temp files.")
    return 0


async def _run_estimate(files: Sequence[str], config: UploadConfig, assets_root: Optional[Path]) -> int:
    manager = _build_manager(None, config, assets_root)
    total = await manager.estimate_upload_size(list(files))
    _echo(f"Estimated upload size: {_human_size(total)} ({total} bytes) for {len(files)} assets")
    return 0


async def _dispatch(args: argparse.Namespace, config: UploadConfig) -> int:
    try:
        if args.command == "clear":
            return await _run_clear(config, args.assets_root)
        if args.command == "estimate":
            return await _run_estimate(args.files, config, args.assets_root)
        return await _run_batch_command(args, config)
    except PostUploaderError as exc:
        raise CLIError(str(exc)) from exc


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--api-url",
        default=None,
        help="Upload API base URL (default from POST_UPLOADER_API_URL)",
    )
    parser.add_argument(
        "--assets-root",
        type=Path,
        default=None,
        help="Resolve relative asset paths against this directory",
    )
    parser.add_argument(
        "--temp-dir",
        type=Path,
        default=None,
        help="Directory for transcoded files (default from POST_UPLOADER_CACHE_DIR)",
    )
    parser.add_argument(
        "--records-dir",
        type=Path,
        default=None,
        help="Directory for durable upload records (default from POST_UPLOADER_CACHE_DIR)",
    )
    parser.add_argument(
        "-p",
        "--parallel",
        type=int,
        default=None,
        help="Maximum concurrent uploads (default from POST_UPLOADER_MAX_PARALLEL or 3)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="post-upload",
        description="Upload photo and video assets of a gallery's posts.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="post-upload (from post_uploader)",
    )
    subparsers = parser.add_subparsers(dest="command")

    upload = subparsers.add_parser("upload", help="Upload the assets listed in a posts JSON file")
    upload.add_argument("posts", type=Path, help="JSON file with [{post_id, key, asset}, ...]")
    upload.add_argument("-g", "--gallery-id", default=None, help="Gallery the posts belong to")
    _add_common_arguments(upload)

    resume = subparsers.add_parser("resume", help="Resume uploads interrupted by a previous run")
    _add_common_arguments(resume)

    retry = subparsers.add_parser("retry", help="Retry uploads that failed")
    _add_common_arguments(retry)

    clear = subparsers.add_parser("clear", help="Delete cached temp files and finished records")
    _add_common_arguments(clear)

    estimate = subparsers.add_parser("estimate", help="Estimate the bytes an upload would send")
    estimate.add_argument("files", nargs="+", help="Asset paths")
    _add_common_arguments(estimate)
    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1

    effective_log_mode = _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level,
    )

    try:
        config = _build_config(args)
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    if not args.silent:
        render_configuration_summary(
            {
                "Command": args.command,
                "API": args.api_url or os.getenv("POST_UPLOADER_API_URL") or "(missing)",
                "Assets Root": str(args.assets_root) if args.assets_root else "-",
                "Temp Dir": str(config.temp_dir),
                "Records Dir": str(config.records_dir),
                "Parallel Uploads": config.max_parallel_uploads,
                "Chunk Size": _human_size(config.chunk_size),
                "Env File": str(used_env_file) if used_env_file else "-",
                "Logging": effective_log_mode,
            }
        )

    try:
        return asyncio.run(_dispatch(args, config))
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled. Run 'post-upload resume' to continue.", file=sys.stderr)
        return 130


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
