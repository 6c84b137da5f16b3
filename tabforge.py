#!/usr/bin/env python3
"""
TabForge

A Python script that expands tabs, strips carriage returns and fixes the
trailing newline of every non-hidden file in one or more directory trees.

Files are rewritten in place. Hidden files and directories (names longer
than one character that start with a dot) are left alone.
"""

import argparse
import errno
import logging
import os
import sys
from typing import Callable, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from tqdm import tqdm

# Define version
__version__ = "1.0.0"
__author__ = "tboy1337"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Whitespace trimmed when deciding whether the last line is blank, NUL included
WHITESPACE = b" \t\n\v\f\r\x00"

USAGE = (
    "Usage: tabforge <count> <dirs...>\n"
    "    count - Number of spaces to insert for each tab\n"
    "    dirs  - Directories in which files should be rewritten"
)

logger = logging.getLogger("TabForge")


class UsageError(Exception):
    """Raised when the command line does not name a count and a directory."""


class TabForgeError(Exception):
    """A filesystem failure tied to a single path."""

    action = "process"

    def __init__(self, path: str, error: Optional[OSError] = None) -> None:
        self.path = path
        self.error = error
        reason = (error.strerror or str(error)) if error is not None else "unknown error"
        super().__init__(f"Cannot {self.action} {path}: {reason}")


class FileReadError(TabForgeError):
    action = "read"


class FileWriteError(TabForgeError):
    action = "write"


class TraversalError(TabForgeError):
    action = "traverse"


class Invocation(NamedTuple):
    """Parameters of a single run, fixed once the command line is parsed."""

    tab_width: int
    roots: Tuple[str, ...]


class RunSummary:
    """Outcome counters for a run."""

    def __init__(self) -> None:
        self.rewritten: int = 0
        self.unchanged: int = 0
        self.errors: List[TabForgeError] = []

    @property
    def failed(self) -> int:
        return len(self.errors)

    def __repr__(self) -> str:
        return (
            f"RunSummary(rewritten={self.rewritten}, "
            f"unchanged={self.unchanged}, failed={self.failed})"
        )


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Send log records to stderr and, optionally, to an appended log file."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(format=LOG_FORMAT, handlers=handlers, force=True)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def parse_count(value: str) -> int:
    """Parse the number of spaces per tab, rejecting anything but a whole number >= 0."""
    try:
        count = int(value.strip())
    except ValueError:
        raise ValueError(f"count must be a non-negative integer, got {value!r}") from None
    if count < 0:
        raise ValueError(f"count must be a non-negative integer, got {value!r}")
    return count


def parse_invocation(arguments: Sequence[str]) -> Invocation:
    """Split positional arguments into the tab count and the roots that follow it."""
    if len(arguments) < 2:
        raise UsageError(USAGE)
    return Invocation(parse_count(arguments[0]), tuple(arguments[1:]))


def make_replacement(tab_width: int) -> bytes:
    if tab_width < 0:
        raise ValueError(f"tab width must not be negative: {tab_width}")
    return b" " * tab_width


def is_hidden(name: str) -> bool:
    """A name is hidden when it starts with a dot and is longer than one character."""
    return len(name) > 1 and name[0] == "."


def iter_files(
    root: str, onerror: Optional[Callable[[TraversalError], None]] = None
) -> Iterator[str]:
    """
    Yield every regular, non-hidden file reachable from root, depth first.

    The root itself is subject to the hidden rule and may be a plain file.
    Symbolic links are never rewritten or descended. Entries of a directory
    are visited in sorted order.

    Traversal failures raise TraversalError, unless onerror is given, in
    which case it is called and the unreadable directory is skipped.
    """

    def fail(error: OSError) -> None:
        traversal_error = TraversalError(error.filename or root, error)
        if onerror is None:
            raise traversal_error
        onerror(traversal_error)

    if not os.path.lexists(root):
        fail(FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), root))
        return

    # Only trailing separators are dropped; "foo/.." keeps its ".." name
    if is_hidden(os.path.basename(root.rstrip(os.sep) or root)):
        logger.debug("Skipping hidden root: %s", root)
        return

    if os.path.islink(root) or not os.path.isdir(root):
        if os.path.isfile(root) and not os.path.islink(root):
            yield root
        else:
            logger.debug("Skipping non-regular file: %s", root)
        return

    def walk(directory: str) -> Iterator[str]:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as e:
            fail(e)
            return

        # Files and subdirectories interleave in name order, each directory
        # fully visited before its next sibling
        for entry in entries:
            if is_hidden(entry.name):
                logger.debug("Skipping hidden entry: %s", entry.path)
                continue
            if entry.is_dir(follow_symlinks=False):
                yield from walk(entry.path)
            elif entry.is_file(follow_symlinks=False):
                yield entry.path
            else:
                logger.debug("Skipping non-regular file: %s", entry.path)

    yield from walk(root)


def rewrite_lines(data: bytes, replacement: bytes) -> bytes:
    """
    Normalize the lines of a file's content.

    Every line loses its carriage returns, has each tab replaced by
    replacement and is terminated by a single newline. One blank line is
    appended when the content is empty or its last line is not blank.
    """
    lines: List[bytes] = data.split(b"\n")
    # A trailing newline terminates the last line rather than starting a new one
    if lines[-1] == b"":
        lines.pop()

    modified: bytes = b"".join(
        line.replace(b"\r", b"").replace(b"\t", replacement) + b"\n" for line in lines
    )

    if not lines or lines[-1].strip(WHITESPACE):
        modified += b"\n"
    return modified


def rewrite_file(file_path: str, replacement: bytes) -> bool:
    """Rewrite a file in place. Returns False when it was already normalized."""
    try:
        with open(file_path, "rb") as f:
            original_content: bytes = f.read()
    except OSError as e:
        raise FileReadError(file_path, e) from e

    modified_content: bytes = rewrite_lines(original_content, replacement)

    # Only write back if content has changed
    if modified_content == original_content:
        logger.debug("No changes needed for file: %s", file_path)
        return False

    try:
        with open(file_path, "wb") as f:
            f.write(modified_content)
    except OSError as e:
        raise FileWriteError(file_path, e) from e

    logger.debug("Updated file: %s", file_path)
    return True


def clean_trees(
    invocation: Invocation, keep_going: bool = False, progress: bool = False
) -> RunSummary:
    """
    Rewrite every file under the invocation's roots, one file at a time.

    By default the first failure propagates and the run stops; files already
    rewritten stay rewritten. With keep_going, failures are logged, collected
    in the summary and the run carries on.
    """
    replacement: bytes = make_replacement(invocation.tab_width)
    summary = RunSummary()

    def record(error: TabForgeError) -> None:
        logger.error("%s", error)
        summary.errors.append(error)

    with tqdm(desc="Rewriting files", unit="file", disable=not progress) as pbar:
        for root in invocation.roots:
            logger.debug("Processing root: %s", root)
            for file_path in iter_files(root, onerror=record if keep_going else None):
                try:
                    if rewrite_file(file_path, replacement):
                        summary.rewritten += 1
                    else:
                        summary.unchanged += 1
                except (FileReadError, FileWriteError) as e:
                    if not keep_going:
                        raise
                    record(e)
                finally:
                    pbar.update(1)

    logger.info(
        "Rewritten: %d, Unchanged: %d, Errors: %d",
        summary.rewritten,
        summary.unchanged,
        summary.failed,
    )
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tabforge",
        usage="%(prog)s <count> <dirs...> [options]",
        description="Expand tabs, strip carriage returns and fix trailing "
        "newlines of all files in the given directories",
        epilog="Arguments that are not options are taken as the count followed by "
        "the directories. Put directories whose name starts with -h after --.",
        allow_abbrev=False,
    )
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="Continue with the remaining files after an I/O error "
        "and report all failures at the end",
    )
    parser.add_argument(
        "--progress",
        action="store_true",
        help="Show a progress bar while files are rewritten",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also append log messages to this file",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"TabForge v{__version__}",
        help="Show program version and exit",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    # Anything argparse does not recognise, including dash-prefixed names,
    # is positional, so "-x" alone still prints usage
    args, positionals = parser.parse_known_args(argv)
    if "--" in positionals:
        positionals.remove("--")

    try:
        invocation = parse_invocation(positionals)
    except UsageError as e:
        print(e)
        return 0
    except ValueError as e:
        parser.error(str(e))

    try:
        configure_logging(args.verbose, args.log_file)
        logger.info(
            "Replacing tabs with %d spaces in: %s",
            invocation.tab_width,
            ", ".join(invocation.roots),
        )

        summary = clean_trees(
            invocation, keep_going=args.keep_going, progress=args.progress
        )

        if summary.failed:
            logger.warning("Encountered errors while processing %d paths", summary.failed)
            return 1
        return 0
    except TabForgeError as e:
        logger.error("Error: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.warning("Operation cancelled by user.")
        return 130
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("An unexpected error occurred: %s", str(e))
        if logger.isEnabledFor(logging.DEBUG):
            import traceback  # pylint: disable=import-outside-toplevel

            logger.debug("Traceback: %s", traceback.format_exc())
        return 1


if __name__ == "__main__":
    sys.exit(main())
