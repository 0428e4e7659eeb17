import pytest
import shutil
import subprocess
from sweep import GitCommandError, ProgressReporter

COMMIT_HASH = "e83c5163316f89bfbde7d9ab23ca2e25604af290"
TREE_HASH = "2b297e643c551e76cfa1f93810c50811382f9117"


class FakeGateway:
    """
    Stand-in for GitGateway.

    `objects` is the list of paths `rev-list` reports; a successful
    filter-repo call drops its path from that list, so later enumerations
    see the rewritten history.
    """

    def __init__(
        self,
        objects=(),
        ignored=(),
        check_ignore_errors=None,
        rewrite_failures=(),
        checkout_fails=False,
        rev_list_fails=False,
    ):
        self.objects = list(objects)
        self.ignored = set(ignored)
        self.check_ignore_errors = dict(check_ignore_errors or {})
        self.rewrite_failures = set(rewrite_failures)
        self.checkout_fails = checkout_fails
        self.rev_list_fails = rev_list_fails
        self.calls = []
        self.interactive_calls = []

    def rev_list_output(self):
        lines = [COMMIT_HASH, f"{TREE_HASH} "]
        lines += [f"{i:040x} {path}" for i, path in enumerate(self.objects)]
        return lines

    def capture(self, args):
        args = list(args)
        self.calls.append(args)
        command = args[0]
        if command == "checkout":
            if self.checkout_fails:
                raise GitCommandError(args, 1, f"error: pathspec '{args[1]}' did not match")
            return []
        if command == "rev-list":
            if self.rev_list_fails:
                raise GitCommandError(args, 128, "fatal: not a git repository")
            return self.rev_list_output()
        if command == "check-ignore":
            path = args[-1]
            if path in self.check_ignore_errors:
                raise GitCommandError(args, self.check_ignore_errors[path], "fatal")
            if path in self.ignored:
                return [path]
            raise GitCommandError(args, 1)
        raise AssertionError(f"unexpected git command: {args}")

    def interactive(self, args):
        args = list(args)
        self.interactive_calls.append(args)
        path = args[-1]
        if path in self.rewrite_failures:
            raise GitCommandError(args, 2)
        self.objects = [p for p in self.objects if p != path]

    @property
    def rewritten_paths(self):
        return [args[-1] for args in self.interactive_calls]

    @property
    def check_ignore_paths(self):
        return [args[-1] for args in self.calls if args[0] == "check-ignore"]


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True, use_colors=False)

@pytest.fixture
def plain_reporter():
    return ProgressReporter(use_colors=False)

@pytest.fixture
def repo_dir(tmp_path):
    """Working tree of the main branch: x.txt and z.bin exist, y.log does not."""
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "x.txt").write_text("keep me\n", encoding="utf-8")
    (repo / "z.bin").write_bytes(b"\x00\x01\x02")
    return repo

@pytest.fixture
def fake_gateway():
    return FakeGateway(objects=["x.txt", "y.log", "z.bin"], ignored={"z.bin"})

@pytest.fixture
def git_repo(tmp_path):
    """
    Real repository on branch main whose history holds:
    x.txt (kept), y.log (deleted), z.bin (untracked later and ignored), .gitignore
    """
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    repo = tmp_path / "git_repo"
    repo.mkdir()

    def run(*args):
        subprocess.run(["git", "-C", str(repo)] + list(args),
                       check=True, capture_output=True)

    run("init")
    run("symbolic-ref", "HEAD", "refs/heads/main")
    run("config", "user.email", "tester@test.com")
    run("config", "user.name", "Tester")
    run("config", "commit.gpgsign", "false")

    # Commit 1 — three files
    (repo / "x.txt").write_text("keep me\n", encoding="utf-8")
    (repo / "y.log").write_text("debug output\n", encoding="utf-8")
    (repo / "z.bin").write_bytes(b"\x00\x01\x02")
    run("add", ".")
    run("commit", "-m", "initial")

    # Commit 2 — the log file is deleted
    run("rm", "y.log")
    run("commit", "-m", "drop log")

    # Commit 3 — binaries become ignored, z.bin stays on disk untracked
    (repo / ".gitignore").write_text("*.bin\n", encoding="utf-8")
    run("rm", "--cached", "z.bin")
    run("add", ".gitignore")
    run("commit", "-m", "ignore binaries")

    return str(repo)
