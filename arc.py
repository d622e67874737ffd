#!/usr/bin/env python3
"""
arc - move files into a compressed archive and restore them later.

Entries live under the archive root at a path mirroring the original
absolute location, so ``/home/tux/notes.txt`` archived into ``~/archive``
becomes ``~/archive/home/tux/notes.txt.tar.gz``. The tarball itself stores
absolute names, which is what restoring relies on; the directory layout is
the only index there is.
"""
from __future__ import annotations

import argparse
import fnmatch
import os
import shlex
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence


DEFAULT_INSTALL_PATH = Path("/usr/local/bin")
INSTALL_NAME = "arc"
INSTALL_URL = "https://raw.githubusercontent.com/turtureanu/arc.sh/main/arc.sh"

# Compression programs tar can drive, and the suffix their entries get.
COMPRESSION_SUFFIXES: Dict[str, str] = {
    "gzip": ".tar.gz",
    "pigz": ".tar.gz",
    "zstd": ".tar.zst",
    "pzstd": ".tar.zst",
    "xz": ".tar.xz",
    "pixz": ".tar.xz",
    "bzip2": ".tar.bz2",
    "pbzip2": ".tar.bz2",
    "lbzip2": ".tar.bz2",
    "lz4": ".tar.lz4",
}

ENTRY_SUFFIXES = tuple(sorted(set(COMPRESSION_SUFFIXES.values()), key=len, reverse=True))

PIGZ_COMMAND = "pigz -N -M --best"

MAX_NAME_LENGTH = 20

LIST_HEADER = "size   date added            file name             original path"

BLUE = "\033[0;34m"
GREEN = "\033[0;32m"
RESET = "\033[0m"

USAGE_EPILOG = """\
To undo a file, provide either the file name or the full original path (to avoid collisions).
Examples:
  arc --archive-dir archive-tmp/ -c zstd my-file.txt my-dir/
  arc -u ".vsco*"            # the name is matched as a glob
  arc -u "/home/tux/projects/knowleaks/node_modules"
"""


def msg(message: str) -> None:
    print(message, file=sys.stderr)


def info(message: str) -> None:
    print(f"[+] {message}", file=sys.stderr)


def warn(message: str) -> None:
    print(f"[!] {message}", file=sys.stderr)


def debug(message: str, verbose: bool) -> None:
    if verbose:
        print(f"[debug] {message}", file=sys.stderr)


def get_home() -> Path:
    """Allow overriding home for tests via ARC_HOME."""
    env_home = os.environ.get("ARC_HOME")
    return Path(env_home).expanduser() if env_home else Path.home()


def default_archive_dir() -> Path:
    env_dir = os.environ.get("ARC_ARCHIVE_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return (get_home() / "archive").resolve()


def format_size(num_bytes: int) -> str:
    """Short human readable size in the style of ``du -h`` (512, 4.0K, 12M)."""
    units = ["", "K", "M", "G", "T"]
    size = float(num_bytes)
    for unit in units:
        if size < 1024 or unit == units[-1]:
            if not unit:
                return str(int(size))
            if round(size, 1) < 10:
                return f"{size:.1f}{unit}"
            return f"{size:.0f}{unit}"
        size /= 1024
    return str(num_bytes)


class ArcError(Exception):
    """Fatal error: message goes to stderr, exit_code becomes the process status."""

    exit_code = 1

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidOption(ArcError):
    exit_code = 1


class TransferError(ArcError):
    exit_code = 2


class InvalidFile(ArcError):
    exit_code = 3


class InvalidArchiveDirectory(ArcError):
    exit_code = 4


class ArchiveInsideArchive(ArcError):
    exit_code = 5


class ArchivedFileNotFound(ArcError):
    exit_code = 6


class CompressionFailed(ArcError):
    exit_code = 1


class ExtractionFailed(ArcError):
    exit_code = 1


class EntryConflict(ArcError):
    exit_code = 1


class SourceRemovalFailed(ArcError):
    exit_code = 1


class NotInstalled(ArcError):
    exit_code = 1


@dataclass(frozen=True)
class Compressor:
    command: str
    suffix: str


@dataclass(frozen=True)
class Config:
    archive_dir: Path
    install_path: Path = DEFAULT_INSTALL_PATH
    undo: bool = False
    compression: Optional[Compressor] = None
    verbose: bool = False


@dataclass(frozen=True)
class Target:
    name: str
    path: Path


def run_tool(cmd: Sequence[str], verbose: bool = False) -> subprocess.CompletedProcess:
    debug(f"Running command: {shlex.join(cmd)}", verbose)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        debug(f"Command not found: {cmd[0]}", verbose)
        return subprocess.CompletedProcess(list(cmd), 127, "", f"{cmd[0]}: command not found")
    if result.returncode != 0:
        debug(f"Command {shlex.join(cmd)} returned {result.returncode}: {result.stderr.strip()}", verbose)
    return result


def strip_entry_suffix(name: str) -> str:
    for suffix in ENTRY_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def is_entry(path: Path) -> bool:
    return path.name.endswith(ENTRY_SUFFIXES)


def is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


class ArchiveStore:
    """The archive root and the path mapping between sources and entries."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def entry_dir_for(self, source: Path) -> Path:
        # Plain concatenation: <root>/home/tux for a source in /home/tux.
        return Path(f"{self.root}{source.parent}")

    def entry_path_for(self, source: Path, suffix: str) -> Path:
        return self.entry_dir_for(source) / f"{source.name}{suffix}"

    def original_path(self, entry: Path) -> Path:
        relative = str(entry)[len(str(self.root)):]
        return Path(strip_entry_suffix(relative))

    def iter_entries(self) -> Iterator[Path]:
        if not self.root.is_dir():
            return
        for root, dirs, files in os.walk(self.root, followlinks=False):
            root_path = Path(root)
            for name in files:
                if name.endswith(ENTRY_SUFFIXES):
                    yield root_path / name

    def find_by_name(self, pattern: str) -> List[Path]:
        """Entries named exactly pattern; failing that, entries matching it as a glob."""
        exact: List[Path] = []
        globbed: List[Path] = []
        for entry in self.iter_entries():
            name = strip_entry_suffix(entry.name)
            if name == pattern:
                exact.append(entry)
            elif fnmatch.fnmatchcase(name, pattern):
                globbed.append(entry)
        return exact or globbed

    def find_by_fragment(self, fragment: str) -> Optional[Path]:
        if not fragment.startswith("/"):
            fragment = "/" + fragment
        base = f"{self.root}{fragment}"
        for suffix in ("",) + ENTRY_SUFFIXES:
            candidate = Path(f"{base}{suffix}").resolve()
            if candidate.is_file() and is_entry(candidate) and is_within(candidate, self.root):
                return candidate
        return None

    def prune(self, start: Path, verbose: bool = False) -> None:
        """Remove empty directories from start upwards, never leaving the root."""
        current = start
        while current != Path("/") and current != self.root and is_within(current, self.root):
            try:
                current.rmdir()
            except OSError:
                break
            debug(f"Removed empty directory {current}", verbose)
            current = current.parent


def select_compressor(config: Config) -> Compressor:
    if config.compression is not None:
        return config.compression
    if shutil.which("pigz"):
        return Compressor(PIGZ_COMMAND, ".tar.gz")
    return Compressor("gzip", ".tar.gz")


def resolve_archive_targets(files: Sequence[str], config: Config) -> List[Target]:
    root = config.archive_dir
    targets: List[Target] = []
    for name in files:
        path = Path(name).expanduser()
        if not path.exists():
            raise InvalidFile("Invalid file given")
        resolved = path.resolve()
        if is_within(resolved, root):
            raise ArchiveInsideArchive("You cannot archive something inside the archive itself!")
        if resolved in root.parents:
            raise ArchiveInsideArchive("You cannot archive a directory containing the archive!")
        targets.append(Target(name, resolved))
    return targets


def resolve_undo_targets(files: Sequence[str], config: Config) -> List[Target]:
    store = ArchiveStore(config.archive_dir)
    targets: List[Target] = []
    for name in files:
        matches = store.find_by_name(name)
        if len(matches) == 1:
            targets.append(Target(name, matches[0].resolve()))
            continue
        debug(f"{len(matches)} entries named '{name}', treating it as a path", config.verbose)
        found = store.find_by_fragment(name)
        if found is None:
            raise InvalidFile("Invalid file given")
        targets.append(Target(name, found))
    return targets


def remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def archive_path(source: Path, config: Config) -> Path:
    """Compress source next to itself, delete it, and move the entry under the root."""
    compressor = select_compressor(config)
    artifact = source.with_name(f"{source.name}{compressor.suffix}")
    store = ArchiveStore(config.archive_dir)
    destination = store.entry_path_for(source, compressor.suffix)
    # Never clobber: neither a sibling with the artifact's name nor an older entry.
    if os.path.lexists(artifact):
        raise EntryConflict(f"Refusing to overwrite existing {artifact}")
    if os.path.lexists(destination):
        raise EntryConflict(f"{source} is already archived at {destination}")

    tar_cmd = [
        "tar",
        "--absolute-names",
        f"--use-compress-program={compressor.command}",
        "-cf",
        str(artifact),
        str(source),
    ]
    result = run_tool(tar_cmd, config.verbose)
    if result.returncode != 0:
        if artifact.exists():
            artifact.unlink()
        detail = result.stderr.strip() if result.stderr else f"exit status {result.returncode}"
        raise CompressionFailed(f"Compression failed for {source}: {detail}")

    removal_error: Optional[OSError] = None
    try:
        remove_path(source)
    except OSError as exc:
        removal_error = exc

    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(artifact), str(destination))
    if removal_error is not None:
        raise SourceRemovalFailed(
            f"Archived {source} to {destination} but could not remove the source: {removal_error}"
        )
    info(f"Archived {source} -> {destination}")
    return destination


def restore_entry(entry: Path, config: Config) -> Path:
    """Extract entry to its original absolute path, then drop it from the store."""
    if not entry.exists():
        raise ArchivedFileNotFound("archived file not found!")
    store = ArchiveStore(config.archive_dir)
    tar_cmd = ["tar", "--absolute-names"]
    if entry.name.endswith(".tar.gz") and shutil.which("pigz"):
        tar_cmd.extend(["-I", "pigz"])
    tar_cmd.extend(["-xf", str(entry)])
    result = run_tool(tar_cmd, config.verbose)
    if result.returncode != 0:
        detail = result.stderr.strip() if result.stderr else f"exit status {result.returncode}"
        raise ExtractionFailed(f"Extraction failed for {entry}: {detail}")

    entry.unlink()
    store.prune(entry.parent, config.verbose)
    original = store.original_path(entry)
    info(f"Restored {original}")
    return original


def archive_command(targets: Sequence[Target], config: Config) -> None:
    for target in targets:
        archive_path(target.path, config)


def undo_command(targets: Sequence[Target], config: Config) -> None:
    for target in targets:
        restore_entry(target.path, config)


def truncate_name(name: str, width: int = MAX_NAME_LENGTH) -> str:
    if len(name) > width:
        return f"{name[:width - 3]}..."
    return name


def list_command(config: Config, color: Optional[bool] = None) -> None:
    store = ArchiveStore(config.archive_dir)
    store.root.mkdir(parents=True, exist_ok=True)
    if color is None:
        color = sys.stdout.isatty()

    print(LIST_HEADER)
    print()
    for entry in store.iter_entries():
        stat = entry.stat()
        size = f"{format_size(stat.st_size):<5}"
        stamp = f"{time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(stat.st_mtime)):<20}"
        if color:
            size = f"{BLUE}{size}{RESET}"
            stamp = f"{GREEN}{stamp}{RESET}"
        name = truncate_name(strip_entry_suffix(entry.name))
        print(f"{size}  {stamp}  {name:<20}  {store.original_path(entry)}")


def privileged(cmd: List[str], directory: Path) -> List[str]:
    if not os.access(directory, os.W_OK) and shutil.which("sudo"):
        return ["sudo"] + cmd
    return cmd


def install(config: Config) -> None:
    url = os.environ.get("ARC_INSTALL_URL", INSTALL_URL)
    target = config.install_path / INSTALL_NAME
    if shutil.which("curl"):
        cmd = ["curl", "-fsSLo", str(target), url]
    elif shutil.which("wget"):
        cmd = ["wget", "-qO", str(target), url]
    else:
        raise TransferError("Neither curl nor wget is available. Install manually.")

    result = run_tool(privileged(cmd, config.install_path), config.verbose)
    if result.returncode != 0 or not target.is_file():
        raise TransferError("Couldn't download script. Install manually.")

    chmod = run_tool(privileged(["chmod", "+x", str(target)], config.install_path), config.verbose)
    if chmod.returncode != 0:
        warn(f"Could not mark {target} executable: {chmod.stderr.strip()}")
    msg("Install successful")


def uninstall(config: Config) -> None:
    target = config.install_path / INSTALL_NAME
    if target.exists():
        location = target
        success_message = "arc was successfully uninstalled"
    else:
        found = shutil.which(INSTALL_NAME)
        if not found:
            raise NotInstalled(f"Couldn't find arc in {config.install_path} or PATH")
        location = Path(found)
        success_message = f"Removed arc from {location}"

    result = run_tool(privileged(["rm", str(location)], location.parent), config.verbose)
    if result.returncode != 0:
        raise ArcError(f"Couldn't remove {location}: {result.stderr.strip()}")
    msg(success_message)


def parse_archive_dir(value: str) -> Path:
    path = Path(value).expanduser()
    if not value or not path.is_dir():
        raise InvalidArchiveDirectory("Invalid archive directory")
    return path.resolve()


def parse_compression(value: str) -> Compressor:
    tokens = shlex.split(value)
    if not tokens:
        raise argparse.ArgumentTypeError("empty compression program")
    program = Path(tokens[0]).name
    suffix = COMPRESSION_SUFFIXES.get(program)
    if suffix is None:
        supported = ", ".join(sorted(COMPRESSION_SUFFIXES))
        raise argparse.ArgumentTypeError(f"unsupported compression program '{program}' (supported: {supported})")
    if not shutil.which(tokens[0]):
        raise argparse.ArgumentTypeError(f"compression program '{tokens[0]}' not found")
    return Compressor(value, suffix)


class ArcArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise InvalidOption(f"Invalid option: {message}")


def build_parser() -> argparse.ArgumentParser:
    parser = ArcArgumentParser(
        prog="arc",
        usage="arc [options] [files]",
        description="Move a file to a directory (archive) from where it may be restored later",
        epilog=USAGE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument("-h", "--help", action="store_true", help="Show this help message")
    parser.add_argument(
        "-u",
        "--undo",
        action="store_true",
        help="Unarchive the file and move it to its original location, see below",
    )
    parser.add_argument("-l", "--list", action="store_true", help="List archived files")
    parser.add_argument(
        "-a",
        "--archive-dir",
        nargs="?",
        const="",
        type=parse_archive_dir,
        help="Set the archive directory [default: ~/archive]",
    )
    parser.add_argument(
        "-c",
        "--compression",
        type=parse_compression,
        help="Compression program used by tar (e.g. zstd, xz) [default: pigz or gzip]",
    )
    parser.add_argument(
        "-i", "--install", action="store_true", help="Install the script globally (from GitHub)"
    )
    parser.add_argument(
        "--install-path",
        help=f"Specify the install path  [default: {DEFAULT_INSTALL_PATH}]",
    )
    parser.add_argument("--uninstall", action="store_true", help="Uninstall the script")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print the commands being run")
    parser.add_argument("files", nargs="*", help="Files or directories to archive (or restore with --undo)")
    return parser


def build_config(args: argparse.Namespace) -> Config:
    return Config(
        archive_dir=args.archive_dir or default_archive_dir(),
        install_path=Path(args.install_path).expanduser() if args.install_path else DEFAULT_INSTALL_PATH,
        undo=args.undo,
        compression=args.compression,
        verbose=args.verbose,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    try:
        args, extras = parser.parse_known_intermixed_args(argv)
        if extras:
            raise InvalidOption(f"Unknown option: {extras[0]}")

        if args.help:
            parser.print_help()
            return 0

        config = build_config(args)
        debug(f"Archive directory: {config.archive_dir}", config.verbose)

        if args.install:
            install(config)
            return 0
        if args.uninstall:
            uninstall(config)
            return 0
        if args.list:
            list_command(config)
            return 0

        if not args.files:
            parser.print_help()
            return 0

        if config.undo:
            undo_command(resolve_undo_targets(args.files, config), config)
        else:
            archive_command(resolve_archive_targets(args.files, config), config)
    except ArcError as exc:
        msg(exc.message)
        return exc.exit_code
    return 0


def run() -> None:
    try:
        code = main()
    except Exception as e:
        import traceback
        log_dir = get_home() / ".arc"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "arc.error.log"

        timestamp = time.strftime("%Y-%m-%d %H:%M:%S")
        with open(log_file, "a") as f:
            f.write(f"\n--- Error at {timestamp} ---\n")
            traceback.print_exc(file=f)

        msg(f"[!] An unexpected error occurred: {e}")
        msg(f"[!] Details saved to: {log_file}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    run()
