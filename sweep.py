#!/usr/bin/env python3
"""
Repository Garbage Sweeper (v1.0.0)

Finds files that git still stores in its object history but that are no
longer meaningful on the main branch, and rewrites history to drop them.

A file is considered garbage when, after checking out the main branch:
- it is not present in the working tree anymore, or
- it is present but matched by the repository's ignore rules.

Every garbage file is shown to the user, and only after an explicit "Yes"
is `git filter-repo` invoked, once per file, to remove it from every commit.

Requirements:
    git and git-filter-repo on PATH
    pip install click colorama tqdm pyyaml
"""

import json
import logging
import os
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import click
import yaml
from colorama import Fore, Style, just_fix_windows_console
from tqdm import tqdm


# Version information
VERSION = "1.0.0"
REPORT_SCHEMA_VERSION = "1.0.0"

logger = logging.getLogger(__name__)

# `git check-ignore` exits with 1 when none of the given paths are ignored.
NOT_IGNORED_EXIT_CODE = 1

# https://github.com/newren/git-filter-repo
FILTER_REPO_ARGS = ["filter-repo", "--force", "--invert-paths", "--path"]

CONSENT_TOKEN = "Yes"

# Erase the whole line and move the cursor back to column 0.
CLEAR_LINE = "\033[2K\r"
FILTERING_MESSAGE = "Filtering files to be removed"
MAX_DOTS = 4
DEFAULT_TICK_INTERVAL = 0.5

CONFIG_FILE_NAMES = [
    ".code-sweep.yaml",
    ".code-sweep.yml",
    ".code-sweep.json",
]

DEFAULTS: Dict[str, Any] = {
    "tick_interval": DEFAULT_TICK_INTERVAL,
    "progress_style": "dots",
    "quiet": False,
    "verbose": False,
    "no_color": False,
    "dry_run": False,
    "report": None,
}


# ============================================================================
# ERRORS
# ============================================================================


class SweepError(Exception):
    """Base class for every fatal condition of a sweep run"""


class ConfigError(SweepError):
    """Missing flags or an unusable configuration file"""


class GitCommandError(SweepError):
    """An external git command exited with a non-zero status"""

    def __init__(
        self, command: List[str], returncode: Optional[int], stderr: str = ""
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr or ""
        if returncode is None:
            message = f"git {' '.join(self.command)} could not be started"
        else:
            message = f"git {' '.join(self.command)} exited with status {returncode}"
        if self.stderr.strip():
            message = f"{message}: {self.stderr.strip()}"
        super().__init__(message)


class RepositoryStateError(SweepError):
    """Checkout or object enumeration failed before anything was modified"""


class ClassificationError(SweepError):
    """A per-file probe failed in an unexpected way"""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(message)


class UserDeclinedError(SweepError):
    """The user did not confirm the removal"""


class RewriteError(SweepError):
    """Rewriting history for one file failed; earlier files stay removed"""

    def __init__(self, path: str, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to rewrite history to remove file: {path}: {cause}")


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from a YAML or JSON file.
    Supports .code-sweep.yaml, .code-sweep.yml and .code-sweep.json
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {config_path}")
    return data


def find_config_file(repo_path: str) -> Optional[str]:
    """
    Auto-discover a configuration file in the repository or current directory.
    """
    for search_dir in [repo_path, os.getcwd()]:
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path

    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        repo_path: str,
        reporter: Optional["ProgressReporter"] = None,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config: Dict[str, Any] = {}
        self.source: Optional[str] = None
        reporter = reporter or ProgressReporter()

        if config_path:
            try:
                self.config = load_config_file(config_path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                raise ConfigError(
                    f"Could not load configuration {config_path}: {e}"
                ) from e
            self.source = config_path
        else:
            auto_path = find_config_file(repo_path)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.source = auto_path
                    reporter.info(f"Auto-discovered configuration: {auto_path}")
                except (OSError, ValueError, yaml.YAMLError) as e:
                    reporter.warning(f"Found config file but failed to load: {e}")

        # Normalize config keys (kebab-case to snake_case)
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in DEFAULTS:
            return DEFAULTS[key]
        return default


def setup_logging(verbose: bool = False):
    """Diagnostics go to stderr so they never mix with the removal list."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    logger.setLevel(level)


# ============================================================================
# CONSOLE OUTPUT
# ============================================================================


class ProgressReporter:
    """
    Console output for a sweep run
    - Color-coded output (colorama)
    - Progress bar for classification (tqdm)
    - quiet mode drops informational chatter but never the removal list,
      the prompt, the counts or errors
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors

    def _colorize(self, text: str, color: str) -> str:
        """Apply color if enabled"""
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def line(self, message: str = ""):
        print(message)

    def alert(self, message: str):
        """Red line, used for anything destructive"""
        print(self._colorize(message, Fore.RED))

    def status(self, message: str):
        """Green line announcing the next rewrite"""
        print()
        print(self._colorize(message, Fore.GREEN))

    def create_progress_bar(
        self, total: int, desc: str = "Filtering files"
    ) -> Optional[tqdm]:
        """Create a progress bar with ETA"""
        if self.quiet:
            return None

        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=" files",
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        )

    def info(self, message: str):
        if not self.quiet:
            print(f"{self._colorize('==>', Fore.BLUE)} {message}")

    def detail(self, message: str):
        """Only shown with --verbose"""
        if self.verbose and not self.quiet:
            print(f"    {message}")

    def warning(self, message: str):
        if not self.quiet:
            prefix = self._colorize("warning:", Fore.YELLOW + Style.BRIGHT)
            print(f"{prefix} {message}")

    def error(self, message: str):
        """Always shown, on stderr"""
        prefix = self._colorize("sweep failed:", Fore.RED + Style.BRIGHT)
        print(f"{prefix} {message}", file=sys.stderr)


class FilteringTicker:
    """
    Redraws "Filtering files to be removed." with 1 to 4 cycling dots on a
    background thread until stopped.

    stop() sets a one-shot event and joins the thread, so once it returns
    the ticker has written its last byte.
    """

    def __init__(
        self,
        message: str = FILTERING_MESSAGE,
        interval: float = DEFAULT_TICK_INTERVAL,
        stream=None,
        enabled: bool = True,
    ):
        self.message = message
        self.interval = interval
        self.stream = stream
        self.enabled = enabled
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @staticmethod
    def next_dots(dots: int) -> int:
        return dots % MAX_DOTS + 1

    def _write(self, text: str):
        stream = self.stream or sys.stdout
        stream.write(text)
        stream.flush()

    def _run(self):
        dots = 1
        while not self._stop_event.is_set():
            self._write(f"{CLEAR_LINE}{self.message}{'.' * dots}")
            dots = self.next_dots(dots)
            self._stop_event.wait(self.interval)
        self._write(CLEAR_LINE)

    def start(self):
        if not self.enabled or self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name="filtering-ticker", daemon=True
        )
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()


# ============================================================================
# DATA STRUCTURES & MODELS
# ============================================================================


def display_path(path: str) -> str:
    """
    Printable form of a path read from git. Bytes that are not UTF-8 are
    carried as surrogates and shown as U+FFFD.
    """
    return path.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


@dataclass(frozen=True)
class RepoHandle:
    """Target repository; fixed for the lifetime of the process"""

    repo_path: str
    main_branch: str


@dataclass(frozen=True)
class ClassificationDecision:
    """Why a path is (or is not) garbage on the main branch"""

    path: str
    missing: bool
    ignored: bool

    @property
    def remove(self) -> bool:
        return self.missing or self.ignored

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": display_path(self.path),
            "missing": self.missing,
            "ignored": self.ignored,
        }


@dataclass
class SweepResult:
    """Accounting for one run"""

    initial_count: int
    removals: List[ClassificationDecision] = field(default_factory=list)
    final_count: Optional[int] = None
    dry_run: bool = False

    @property
    def removal_set(self) -> List[str]:
        return [d.path for d in self.removals]


# ============================================================================
# REPOSITORY COMMAND GATEWAY
# ============================================================================


class GitGateway:
    """
    Runs git commands with the repository as working directory.

    capture() collects stdout as lines; interactive() hands the terminal
    over to the child process. Both raise GitCommandError on a non-zero exit.
    No timeout is applied: a hanging git hangs the sweep.
    """

    def __init__(self, repo_path: str, git_executable: str = "git"):
        self.repo_path = repo_path
        self.git_executable = git_executable

    def _command(self, args: List[str]) -> List[str]:
        return [self.git_executable] + list(args)

    def capture(self, args: List[str]) -> List[str]:
        logger.debug(f"Running {' '.join(self._command(args))} in {self.repo_path}")
        try:
            result = subprocess.run(
                self._command(args),
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                encoding="utf-8",
                # Non UTF-8 paths must survive the round trip to os.lstat and
                # back into git arguments.
                errors="surrogateescape",
            )
        except OSError as e:
            raise GitCommandError(args, None, str(e)) from e

        if result.returncode != 0:
            raise GitCommandError(args, result.returncode, result.stderr)
        return result.stdout.splitlines()

    def interactive(self, args: List[str]) -> None:
        logger.debug(
            f"Running {' '.join(self._command(args))} interactively in {self.repo_path}"
        )
        try:
            result = subprocess.run(self._command(args), cwd=self.repo_path)
        except OSError as e:
            raise GitCommandError(args, None, str(e)) from e

        if result.returncode != 0:
            raise GitCommandError(args, result.returncode)


# ============================================================================
# OBJECT ENUMERATION
# ============================================================================


def parse_object_line(line: str) -> Optional[str]:
    """
    Extract the path from one `git rev-list --objects` line.

    Format: "<hash> <path>". Commits, and the root tree, come without a path
    and are skipped.
    """
    parts = line.split()
    if len(parts) == 2:
        return parts[1]
    return None


def list_all_objects(gateway) -> List[str]:
    """Paths of every object reachable from any ref, across full history"""
    try:
        lines = gateway.capture(["rev-list", "--objects", "--all"])
    except GitCommandError as e:
        raise RepositoryStateError(f"Could not find all objects: {e}") from e

    files = []
    for line in lines:
        path = parse_object_line(line)
        if path is not None:
            files.append(path)
    return files


def checkout_branch(gateway, branch: str):
    try:
        gateway.capture(["checkout", branch])
    except GitCommandError as e:
        raise RepositoryStateError(f"Could not checkout to branch {branch}: {e}") from e


# ============================================================================
# GARBAGE CLASSIFICATION
# ============================================================================


class GarbageClassifier:
    """
    Decides, per path, whether it should be purged from history.

    Must run after the main branch is checked out: presence on disk is
    what defines "still relevant".
    """

    def __init__(self, gateway, repo_path: str):
        self.gateway = gateway
        self.repo_path = repo_path

    def is_present(self, path: str) -> bool:
        """
        True when `path` exists in the working tree. Only "not found" counts
        as absence; other probe failures are raised.
        """
        try:
            os.lstat(os.path.join(self.repo_path, path))
        except (FileNotFoundError, NotADirectoryError):
            return False
        except OSError as e:
            raise ClassificationError(
                path, f"Could not check if file {path} exists: {e}"
            ) from e
        return True

    def is_ignored(self, path: str) -> bool:
        """
        Ask `git check-ignore` whether `path` matches an ignore rule.
        Files that are ignored but still saved in some commits should have
        those commits rewritten to get rid of their size.
        """
        try:
            self.gateway.capture(["check-ignore", "--", path])
        except GitCommandError as e:
            if e.returncode == NOT_IGNORED_EXIT_CODE:
                return False
            raise ClassificationError(
                path, f"Could not check if file {path} is git-ignored: {e}"
            ) from e
        return True

    def decide(self, path: str) -> ClassificationDecision:
        present = self.is_present(path)
        # An absent file is garbage already; no need to spawn check-ignore.
        ignored = present and self.is_ignored(path)
        return ClassificationDecision(path=path, missing=not present, ignored=ignored)

    def is_removable(self, path: str) -> bool:
        return self.decide(path).remove

    def classify_decisions(
        self, paths: List[str], on_progress: Optional[Callable[[], Any]] = None
    ) -> List[ClassificationDecision]:
        """Removable decisions, in enumeration order"""
        removals = []
        for path in paths:
            decision = self.decide(path)
            if decision.remove:
                logger.debug(
                    f"{display_path(path)}: "
                    f"missing={decision.missing} ignored={decision.ignored}"
                )
                removals.append(decision)
            if on_progress:
                on_progress()
        return removals

    def classify(
        self, paths: List[str], on_progress: Optional[Callable[[], Any]] = None
    ) -> List[str]:
        return [d.path for d in self.classify_decisions(paths, on_progress)]


# ============================================================================
# CONFIRMATION & HISTORY REWRITE
# ============================================================================


def print_removal_set(paths: List[str], main_branch: str, reporter: ProgressReporter):
    reporter.alert(
        "All of the following files will be removed either because they are "
        "ignored by git or because they are not present in the repo directory "
        f"on branch {main_branch}"
    )
    for path in paths:
        reporter.line(display_path(path))


def _read_consent() -> str:
    return click.prompt("", default="", show_default=False, prompt_suffix="> ")


def confirm_removal(
    paths: List[str],
    main_branch: str,
    reporter: ProgressReporter,
    prompt_func: Optional[Callable[[], str]] = None,
):
    """
    Show the removal set and read one line of consent.

    Anything but "Yes" (after trimming) raises UserDeclinedError. There is
    no second chance.
    """
    prompt_func = prompt_func or _read_consent

    print_removal_set(paths, main_branch, reporter)
    reporter.alert(
        "Start cleaning up the git objects mentioned above? "
        f"({CONSENT_TOKEN}/No) [Default: No]"
    )

    try:
        answer = prompt_func()
    except (click.exceptions.Abort, EOFError) as e:
        raise UserDeclinedError("User hasn't accepted") from e

    if (answer or "").strip() != CONSENT_TOKEN:
        raise UserDeclinedError("User hasn't accepted")


def remove_from_history(gateway, paths: List[str], reporter: ProgressReporter):
    """
    Run `git filter-repo` once per path, in order.

    Stops at the first failure. Files handled before it are already gone
    from history; there is no rollback.
    """
    for path in paths:
        reporter.status(f"Will start removing file: {display_path(path)}")
        try:
            gateway.interactive(FILTER_REPO_ARGS + [path])
        except GitCommandError as e:
            raise RewriteError(path, e) from e


# ============================================================================
# PIPELINE
# ============================================================================


class GarbageSweeper:
    """
    checkout -> enumerate -> classify -> confirm -> rewrite -> re-enumerate
    """

    def __init__(
        self,
        handle: RepoHandle,
        gateway=None,
        reporter: Optional[ProgressReporter] = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        progress_style: str = "dots",
    ):
        self.handle = handle
        self.gateway = gateway or GitGateway(handle.repo_path)
        self.reporter = reporter or ProgressReporter()
        self.tick_interval = tick_interval
        self.progress_style = progress_style
        self.classifier = GarbageClassifier(self.gateway, handle.repo_path)

    def find_garbage(self, paths: List[str]) -> List[ClassificationDecision]:
        if self.progress_style == "bar":
            progress_bar = self.reporter.create_progress_bar(total=len(paths))
            try:
                return self.classifier.classify_decisions(
                    paths, on_progress=progress_bar.update if progress_bar else None
                )
            finally:
                if progress_bar:
                    progress_bar.close()

        with FilteringTicker(
            interval=self.tick_interval, enabled=not self.reporter.quiet
        ):
            return self.classifier.classify_decisions(paths)

    def run(
        self,
        dry_run: bool = False,
        prompt_func: Optional[Callable[[], str]] = None,
    ) -> SweepResult:
        main_branch = self.handle.main_branch

        self.reporter.info(f"Checking out {main_branch} in {self.handle.repo_path}")
        checkout_branch(self.gateway, main_branch)

        files = list_all_objects(self.gateway)
        result = SweepResult(initial_count=len(files), dry_run=dry_run)
        self.reporter.line(
            f"Git is currently saving objects for {result.initial_count} files."
        )

        result.removals = self.find_garbage(files)
        for decision in result.removals:
            reason = "ignored" if decision.ignored else f"not on {main_branch}"
            self.reporter.detail(f"{display_path(decision.path)}: {reason}")
        paths = result.removal_set

        if dry_run:
            print_removal_set(paths, main_branch, self.reporter)
            self.reporter.info("Dry run: history was not rewritten")
            return result

        confirm_removal(paths, main_branch, self.reporter, prompt_func)
        remove_from_history(self.gateway, paths, self.reporter)

        result.final_count = len(list_all_objects(self.gateway))
        self.reporter.line(
            f"Git was saving {result.initial_count} objects and now is saving "
            f"{result.final_count} objects."
        )
        return result


def write_report(output_path: str, handle: RepoHandle, result: SweepResult) -> str:
    """Export a JSON summary of the run"""
    report = {
        "schema_version": REPORT_SCHEMA_VERSION,
        "tool_version": VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "repository": handle.repo_path,
        "main_branch": handle.main_branch,
        "dry_run": result.dry_run,
        "initial_object_count": result.initial_count,
        "final_object_count": result.final_count,
        "removed": [d.to_dict() for d in result.removals],
    }

    parent = os.path.dirname(os.path.abspath(output_path))
    os.makedirs(parent, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, ensure_ascii=False)
    return output_path


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "--repo-absolute-path",
    "repo_path",
    help="The absolute path to the repo to be cleaned",
)
@click.option(
    "--main-branch-name",
    "main_branch",
    help="The name of the main branch (e.g. master)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Show what would be removed without rewriting history",
)
@click.option(
    "--progress",
    "progress_style",
    type=click.Choice(["dots", "bar"]),
    help="Progress display while filtering files",
)
@click.option("--tick-interval", type=float, help="Seconds between progress redraws")
@click.option(
    "--report",
    type=click.Path(dir_okay=False),
    help="Write a JSON report of the run to this file",
)
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"
)
@click.option(
    "-v", "--verbose", is_flag=True, default=None, help="Log every git command"
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.version_option(version=VERSION)
def main(repo_path, main_branch, config, **kwargs):
    """
    Remove from git history every file that is git-ignored or no longer
    present on the main branch.
    """
    just_fix_windows_console()
    reporter = ProgressReporter(
        verbose=bool(kwargs.get("verbose")), use_colors=not kwargs.get("no_color")
    )

    try:
        if not repo_path:
            raise ConfigError("repo-absolute-path flag must not be empty")

        resolver = ConfigResolver(kwargs, config, repo_path, reporter)
        main_branch = main_branch or resolver.get("main_branch_name")
        if not main_branch:
            raise ConfigError("main-branch-name flag must not be empty")

        reporter = ProgressReporter(
            quiet=bool(resolver.get("quiet")),
            verbose=bool(resolver.get("verbose")),
            use_colors=not resolver.get("no_color"),
        )
        setup_logging(reporter.verbose)

        if not os.path.isdir(repo_path):
            raise ConfigError(f"Repository directory does not exist: {repo_path}")
        handle = RepoHandle(
            repo_path=os.path.abspath(repo_path), main_branch=str(main_branch)
        )

        try:
            tick_interval = float(resolver.get("tick_interval"))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid tick interval: {e}") from e

        progress_style = resolver.get("progress_style")
        if progress_style not in ("dots", "bar"):
            raise ConfigError(f"Unknown progress style: {progress_style}")

        sweeper = GarbageSweeper(
            handle,
            gateway=GitGateway(handle.repo_path),
            reporter=reporter,
            tick_interval=tick_interval,
            progress_style=progress_style,
        )
        result = sweeper.run(dry_run=bool(resolver.get("dry_run")))

        report_path = resolver.get("report")
        if report_path:
            write_report(report_path, handle, result)
            reporter.info(f"Report written to {report_path}")

    except (SweepError, OSError) as e:
        reporter.error(str(e))
        if reporter.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
