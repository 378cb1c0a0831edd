#!/usr/bin/env python3
"""
darcs2git.py

Incrementally import the patches of a darcs repository into a git repository,
using the darcs and git command-line tools.

Usage:
    python3 darcs2git.py [options] SOURCE

Example:
    mkdir project.git
    cd project.git
    python3 darcs2git.py /path/to/darcs/project --author-map authors.yml

The current directory becomes both a darcs and a git repository. Each upstream
patch is pulled with darcs and committed with git; the mapping between patch
hashes and git commits is kept in .git/darcs_patches, so running the same
command again later only imports the patches recorded since.
"""
from __future__ import annotations
import argparse
import datetime
import enum
import os
import re
import shlex
import subprocess
import sys
import xml.etree.ElementTree as ET
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import yaml

PATCH_MAP_FILE = os.path.join(".git", "darcs_patches")
NO_COMMIT = "NONE"
HASH_MARKER = "darcs-hash:"
DEFAULT_AUTHOR = "Unknown"
DEFAULT_EMAIL = ""

TAG_RE = re.compile(r"^TAG\s+(.*\S)\s*$", re.S)
BOOKKEEPING_RE = re.compile(r"^\[\w+ @ \d+\]$")
IGNORE_THIS_RE = re.compile(r"^Ignore-this: [0-9a-f]+[ \t]*\n?", re.M)
MARKER_RE = re.compile(r"^" + re.escape(HASH_MARKER) + r"(\S+)\s*$", re.M)
BACKUP_RE = re.compile(r"\.~\d+~$")
NAME_EMAIL_RE = re.compile(r"^\s*([^<>]*?)\s*<\s*([^<>\s]+@[^<>\s]+)\s*>\s*$")
EMAIL_RE = re.compile(r"^\s*<?\s*(([^@<>\s]+)@[^<>\s]+?)\s*>?\s*$")
LOCAL_DATE_RE = re.compile(
    r"^\s*\w{3}\s+(\w{3})\s+(\d{1,2})\s+(\d{1,2}):(\d{2}):(\d{2})\s+(?:.*?\s+)?(\d{4})\s*$"
)
MONTHS = {
    "Jan": 1, "Feb": 2, "Mar": 3, "Apr": 4, "May": 5, "Jun": 6,
    "Jul": 7, "Aug": 8, "Sep": 9, "Oct": 10, "Nov": 11, "Dec": 12,
}
MAX_OFFSET_MINUTES = 18 * 60


# ---------- Errors ----------


class Darcs2GitError(RuntimeError):
    """Raised for any condition that aborts the import run."""


class CommandError(Darcs2GitError):
    def __init__(self, cmd: Sequence[str], returncode: int, output: str):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"command failed with exit status {returncode}: {shlex.join(self.cmd)}"
            + (f"\n{output}" if output else "")
        )


class LedgerError(Darcs2GitError):
    pass


class AuthorMapError(Darcs2GitError):
    pass


class DirtyTreeError(Darcs2GitError):
    """The working tree has changes nobody accounted for."""

    def __init__(self, message: str, status: str):
        self.status = status
        super().__init__(f"{message}\n{status.rstrip()}")


class UnrecoverableConflictError(DirtyTreeError):
    pass


class TreeMismatchError(Darcs2GitError):
    pass


# ---------- Utilities ----------


class Reporter:
    """Writes progress and diagnostics to stderr at a given verbosity."""

    QUIET, NORMAL, VERBOSE = 0, 1, 2

    def __init__(self, verbosity: int = NORMAL, stream=None):
        self.verbosity = verbosity
        self.stream = stream if stream is not None else sys.stderr

    def _write(self, msg: str):
        self.stream.write(msg.rstrip("\n") + "\n")

    def debug(self, msg: str):
        if self.verbosity >= self.VERBOSE:
            self._write(msg)

    def info(self, msg: str):
        if self.verbosity >= self.NORMAL:
            self._write(msg)

    def warn(self, msg: str):
        self._write(f"Warning: {msg}")

    def error(self, msg: str):
        self._write(f"Error: {msg}")


def run_command(
    cmd: Sequence[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    input_text: Optional[str] = None,
    check: bool = True,
    reporter: Optional[Reporter] = None,
) -> subprocess.CompletedProcess:
    """
    Run cmd to completion and return the CompletedProcess with decoded output.
    Raises CommandError on a non-zero exit status when check is set.
    """
    if reporter:
        reporter.debug("> " + shlex.join(cmd))
    result = subprocess.run(
        list(cmd),
        cwd=cwd,
        env=env,
        input=input_text,
        capture_output=True,
        encoding="utf-8",
        errors="replace",
        check=False,
    )
    if reporter and (result.stdout or result.stderr):
        reporter.debug((result.stdout or "") + (result.stderr or ""))
    if check and result.returncode != 0:
        output = (result.stderr or "").strip() or (result.stdout or "").strip()
        raise CommandError(cmd, result.returncode, output)
    return result


def atomic_write(path: str, content: str):
    """Write content to a sibling temp file, fsync it and rename it over path."""
    tmp_path = path + ".tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def load_yaml_mapping(path: str) -> Dict[str, str]:
    """
    Read a YAML file that must hold a flat mapping. An empty file is an empty
    mapping. Raises ValueError for anything else.
    """
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"{path} is not valid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a mapping")
    mapping: Dict[str, str] = {}
    for key, value in data.items():
        if isinstance(value, (dict, list)) or value is None:
            raise ValueError(f"{path}: entry {key!r} is not a plain value")
        mapping[str(key)] = str(value)
    return mapping


# ---------- Dates ----------


def parse_utc_date(s: str) -> datetime.datetime:
    """darcs records dates as YYYYMMDDHHMMSS in UTC."""
    return datetime.datetime.strptime(s.strip(), "%Y%m%d%H%M%S")


def parse_local_date(s: str) -> Optional[datetime.datetime]:
    """
    Parse darcs' local_date attribute, e.g. "Mon Oct  2 16:23:28 CEST 2006".
    The timezone name is ignored. Returns None when s does not look like that.
    """
    m = LOCAL_DATE_RE.match(s or "")
    if not m or m.group(1) not in MONTHS:
        return None
    month = MONTHS[m.group(1)]
    day, hour, minute, second, year = (int(m.group(i)) for i in (2, 3, 4, 5, 6))
    try:
        return datetime.datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None


def utc_offset_minutes(utc: datetime.datetime, local: Optional[datetime.datetime]) -> int:
    if local is None:
        return 0
    minutes = int(round((local - utc).total_seconds() / 60))
    if abs(minutes) > MAX_OFFSET_MINUTES:
        return 0
    return minutes


def format_git_date(utc_date: str, local_date: str) -> str:
    """
    Build a git date ("2006-10-02 16:23:28 +0200") from darcs' two dates. The
    offset is local minus UTC; an unusable local date means +0000.
    """
    utc = parse_utc_date(utc_date)
    offset = utc_offset_minutes(utc, parse_local_date(local_date))
    local = utc + datetime.timedelta(minutes=offset)
    sign = "-" if offset < 0 else "+"
    hours, minutes = divmod(abs(offset), 60)
    return f"{local:%Y-%m-%d %H:%M:%S} {sign}{hours:02d}{minutes:02d}"


# ---------- Authors ----------


class AuthorMap:
    def __init__(
        self,
        overrides: Optional[Dict[str, str]] = None,
        default_author: str = DEFAULT_AUTHOR,
        default_email: str = DEFAULT_EMAIL,
    ):
        self.overrides = dict(overrides or {})
        self.default_author = default_author
        self.default_email = default_email

    @classmethod
    def load(
        cls,
        path: Optional[str],
        default_author: str = DEFAULT_AUTHOR,
        default_email: str = DEFAULT_EMAIL,
        reporter: Optional[Reporter] = None,
    ) -> "AuthorMap":
        overrides: Dict[str, str] = {}
        if path:
            try:
                overrides = load_yaml_mapping(os.path.expanduser(path))
            except FileNotFoundError:
                if reporter:
                    reporter.warn(f"author map {path} not found")
            except ValueError as e:
                raise AuthorMapError(str(e)) from e
        return cls(overrides, default_author, default_email)

    def canonical(self, raw: str) -> str:
        return self.overrides.get(raw, raw)

    def resolve(self, raw: Optional[str]) -> Tuple[str, str]:
        """Map a raw darcs author to a (name, email) pair."""
        author = self.canonical(raw or "")
        m = NAME_EMAIL_RE.match(author)
        if m and m.group(1):
            return m.group(1), m.group(2)
        m = EMAIL_RE.match(author)
        if m:
            return m.group(2), m.group(1)
        if not author.strip():
            return self.default_author, self.default_email
        return author, self.default_email


# ---------- Patches ----------


def sanitize_tag_name(label: str) -> str:
    """Turn a darcs tag label into something git accepts as a tag name."""
    name = re.sub(r"[\s~^:?*\[\\\x00-\x1f\x7f]+", "_", label.strip())
    name = name.replace("@{", "_")
    name = re.sub(r"\.{2,}", ".", name)
    name = re.sub(r"/{2,}", "/", name)
    name = "/".join(part.lstrip(".") for part in name.split("/"))
    name = name.strip("/").rstrip(".")
    while name.endswith(".lock"):
        name = name[: -len(".lock")]
    if name in ("", "@") or name.startswith("-"):
        name = "_" + name
    return name


class PatchRecord:
    def __init__(
        self,
        identifier: str,
        author: str,
        utc_date: str,
        local_date: str = "",
        inverted: bool = False,
        name: str = "",
        comment: str = "",
        position: int = 0,
    ):
        self.identifier = identifier
        self.author = author
        self.utc_date = utc_date
        self.local_date = local_date
        self.inverted = inverted
        self.name = name
        self.comment = comment
        self.position = position
        m = TAG_RE.match(name)
        self.is_tag = bool(m)
        self.tag_name: Optional[str] = sanitize_tag_name(m.group(1)) if m else None
        self._identity: Optional[Tuple[str, str]] = None

    def __repr__(self):
        return f"<PatchRecord {self.identifier} name={self.name!r} author={self.author!r}>"

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.position, self.identifier)

    @property
    def git_date(self) -> str:
        return format_git_date(self.utc_date, self.local_date)

    def describe(self) -> str:
        return (
            f"patch {self.name!r}\n"
            f"  hash:   {self.identifier}\n"
            f"  date:   {self.local_date or self.utc_date}\n"
            f"  author: {self.author}"
        )

    def commit_message(self, clean: bool = False) -> str:
        title = ""
        if not BOOKKEEPING_RE.match(self.name.strip()):
            title = ("UNDO: " if self.inverted else "") + self.name.strip()
        body = self.comment
        if clean:
            body = IGNORE_THIS_RE.sub("", body)
        parts = [title, body.strip("\n").rstrip()]
        if not clean:
            parts.append(HASH_MARKER + self.identifier)
        return "\n\n".join(p for p in parts if p.strip()) + "\n"

    def identity(self, authors: AuthorMap) -> Tuple[str, str]:
        if self._identity is None:
            self._identity = authors.resolve(self.author)
        return self._identity

    def git_environment(self, authors: AuthorMap) -> Dict[str, str]:
        name, email = self.identity(authors)
        date = self.git_date
        return {
            "GIT_AUTHOR_NAME": name,
            "GIT_AUTHOR_EMAIL": email,
            "GIT_AUTHOR_DATE": date,
            "GIT_COMMITTER_NAME": name,
            "GIT_COMMITTER_EMAIL": email,
            "GIT_COMMITTER_DATE": date,
        }

    def is_pending(self, ledger: "CommitLedger") -> bool:
        return self.identifier not in ledger


class CommitIdentity(Protocol):
    def git_environment(self, authors: AuthorMap) -> Dict[str, str]: ...


class LedgerTracked(Protocol):
    identifier: str

    def is_pending(self, ledger: "CommitLedger") -> bool: ...


def parse_changes_xml(text: str) -> List[PatchRecord]:
    """
    Parse the output of `darcs changes --reverse --xml-output` into patch
    records, keeping the document order (oldest first).
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise Darcs2GitError(f"cannot parse darcs changes output: {e}") from e
    patches: List[PatchRecord] = []
    for position, node in enumerate(root.findall("patch")):
        identifier = node.get("hash")
        date = node.get("date")
        if not identifier or not date:
            raise Darcs2GitError(f"darcs patch #{position} has no hash or date")
        try:
            parse_utc_date(date)
        except ValueError as e:
            raise Darcs2GitError(f"darcs patch {identifier} has a bad date {date!r}") from e
        patches.append(
            PatchRecord(
                identifier=identifier,
                author=node.get("author", ""),
                utc_date=date,
                local_date=node.get("local_date", ""),
                inverted=node.get("inverted", "False").lower() == "true",
                name=node.findtext("name", default=""),
                comment=node.findtext("comment", default=""),
                position=position,
            )
        )
    return patches


# ---------- darcs ----------


class DarcsRepo:
    def __init__(self, path: str, reporter: Optional[Reporter] = None):
        self.path = os.path.abspath(path)
        self.reporter = reporter

    def __repr__(self):
        return f"<DarcsRepo {self.path}>"

    def darcs(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return run_command(["darcs", *args], cwd=self.path, check=check, reporter=self.reporter)

    def is_repository(self) -> bool:
        return os.path.isdir(os.path.join(self.path, "_darcs"))

    def changes(self) -> List[PatchRecord]:
        result = self.darcs("changes", "--reverse", "--xml-output")
        return parse_changes_xml(result.stdout)

    def format(self) -> str:
        try:
            with open(os.path.join(self.path, "_darcs", "format"), "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return ""

    def initialize(self, flags: Sequence[str] = ()):
        self.darcs("initialize", *flags)

    def status(self) -> str:
        """Summary of unrecorded changes, or an empty string when clean."""
        result = self.darcs("whatsnew", "--summary", "--look-for-adds", check=False)
        if result.returncode == 1:
            return ""
        if result.returncode != 0:
            raise CommandError(result.args, result.returncode, result.stderr.strip())
        return result.stdout

    def is_clean(self) -> bool:
        return not self.status().strip()

    def pull(self, source: str, identifier: str):
        self.darcs(
            "pull",
            "--all",
            "--quiet",
            "--match",
            f"hash {identifier}",
            "--set-default",
            "--set-scripts-executable",
            source,
        )

    def revert_all(self):
        self.darcs("revert", "--all")

    def remove_backups(self) -> List[str]:
        """Delete the *.~N~ files darcs leaves behind on conflicts."""
        removed: List[str] = []
        for root, dirs, files in os.walk(self.path):
            dirs[:] = [d for d in dirs if d not in ("_darcs", ".git")]
            for f in files:
                if BACKUP_RE.search(f):
                    path = os.path.join(root, f)
                    os.unlink(path)
                    removed.append(os.path.relpath(path, self.path))
        return removed


def darcs_init_flags(format_text: str, reporter: Optional[Reporter] = None) -> List[str]:
    """Pick `darcs initialize` flags matching the source repository format."""
    if "darcs-3" in format_text:
        return ["--darcs-3"]
    if "darcs-2" in format_text:
        return ["--darcs-2"]
    if "hashed" in format_text:
        return ["--hashed"]
    if reporter:
        reporter.warn(
            "source uses an old-fashioned darcs format; consider "
            "`darcs optimize upgrade` there if tags do not import cleanly"
        )
    return []


# ---------- git ----------


class GitRepo:
    def __init__(self, path: str, reporter: Optional[Reporter] = None):
        self.path = os.path.abspath(path)
        self.reporter = reporter

    def __repr__(self):
        return f"<GitRepo {self.path}>"

    def git(
        self,
        *args: str,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        full_env = dict(os.environ, **env) if env else None
        return run_command(
            ["git", *args],
            cwd=self.path,
            env=full_env,
            input_text=input_text,
            check=check,
            reporter=self.reporter,
        )

    def is_repository(self) -> bool:
        return os.path.isdir(os.path.join(self.path, ".git"))

    def initialize(self):
        self.git("init", "--quiet")

    def ensure_excluded(self, pattern: str):
        info_dir = os.path.join(self.path, ".git", "info")
        exclude = os.path.join(info_dir, "exclude")
        os.makedirs(info_dir, exist_ok=True)
        existing = ""
        if os.path.exists(exclude):
            with open(exclude, "r", encoding="utf-8") as f:
                existing = f.read()
        if pattern in existing.splitlines():
            return
        with open(exclude, "a", encoding="utf-8") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(pattern + "\n")

    def is_empty(self) -> bool:
        return not self.git("branch", "--list").stdout.strip()

    def head(self) -> str:
        result = self.git("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        if result.returncode != 0:
            return NO_COMMIT
        return result.stdout.strip() or NO_COMMIT

    def tag_target(self, name: str) -> Optional[str]:
        result = self.git("rev-list", "--max-count=1", f"refs/tags/{name}", "--", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def status_entries(self) -> List[Tuple[str, str]]:
        """
        Return (code, path) pairs from `git status --porcelain`, ignored paths
        excluded. Renames and copies are reported under their new path.
        """
        out = self.git("status", "--porcelain", "-z", "--untracked-files=all").stdout
        fields = out.split("\0")
        entries: List[Tuple[str, str]] = []
        i = 0
        while i < len(fields):
            field = fields[i]
            i += 1
            if len(field) < 4:
                continue
            code, path = field[:2], field[3:]
            if code[0] in "RC":
                i += 1  # the original path follows
            entries.append((code, path))
        return entries

    def status(self) -> str:
        return "".join(f"{code} {path}\n" for code, path in self.status_entries())

    def is_clean(self) -> bool:
        return not self.status_entries()

    def commit_all(self, message: str, env: Dict[str, str]) -> bool:
        """
        Stage new files and commit every change in the working tree. Returns
        False without committing when there is nothing to commit.
        """
        entries = self.status_entries()
        if not entries:
            return False
        new_files = [path for code, path in entries if code == "??"]
        for start in range(0, len(new_files), 200):
            self.git("add", "--", *new_files[start : start + 200])
        self.git(
            "commit",
            "--all",
            "--quiet",
            "--no-verify",
            "--allow-empty-message",
            "--cleanup=whitespace",
            "--file=-",
            env=env,
            input_text=message,
        )
        return True

    def tag(self, name: str, message: str, env: Dict[str, str]):
        self.git(
            "tag",
            "--annotate",
            "--force",
            "--cleanup=whitespace",
            "--file=-",
            name,
            env=env,
            input_text=message,
        )

    def scan_markers(self) -> Dict[str, str]:
        """
        Collect darcs-hash markers from commit messages and tag annotations.
        Commits map to themselves, tags to the commit they point at.
        """
        mapping: Dict[str, str] = {}
        if self.is_empty():
            return mapping
        log = self.git("log", "--all", "--reverse", "--format=%H%x00%B%x1e").stdout
        for record in log.split("\x1e"):
            record = record.lstrip("\n")
            if "\0" not in record:
                continue
            sha, body = record.split("\0", 1)
            for identifier in MARKER_RE.findall(body):
                mapping[identifier] = sha
        refs = self.git(
            "for-each-ref",
            "--format=%(objectname)%00%(*objectname)%00%(contents)%1e",
            "refs/tags",
        ).stdout
        for record in refs.split("\x1e"):
            record = record.lstrip("\n")
            if record.count("\0") < 2:
                continue
            sha, peeled, body = record.split("\0", 2)
            for identifier in MARKER_RE.findall(body):
                mapping[identifier] = peeled or sha
        return mapping


# ---------- Ledger ----------


class CommitLedger:
    """Durable map of darcs patch hash -> git commit id."""

    def __init__(self, path: str, git: GitRepo, entries: Optional[Dict[str, str]] = None):
        self.path = path
        self.git = git
        self.entries: Dict[str, str] = dict(entries or {})

    def __repr__(self):
        return f"<CommitLedger {self.path} entries={len(self.entries)}>"

    def __contains__(self, identifier: str) -> bool:
        return identifier in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def load(cls, path: str, git: GitRepo, reporter: Optional[Reporter] = None) -> "CommitLedger":
        """
        Read the ledger at path. Without a ledger file, an existing git history
        is scanned for darcs-hash markers instead.
        """
        if os.path.exists(path):
            try:
                return cls(path, git, load_yaml_mapping(path))
            except ValueError as e:
                raise LedgerError(f"corrupt patch map: {e}") from e
        ledger = cls(path, git)
        if not git.is_empty():
            ledger.entries = git.scan_markers()
            if reporter:
                reporter.info(
                    f"No patch map found; recovered {len(ledger.entries)} "
                    "patches from existing git history"
                )
            if ledger.entries:
                ledger.save()
        return ledger

    def save(self):
        atomic_write(self.path, yaml.safe_dump(self.entries, default_flow_style=False))

    def record_commit(self, source_id: str, target: str):
        self.entries[source_id] = target
        self.save()

    def find_target(self, is_tag: bool, tag_name: Optional[str], source_id: str) -> Optional[str]:
        target = self.entries.get(source_id)
        if target is None and is_tag and tag_name:
            target = self.git.tag_target(tag_name)
        return target

    def is_target_empty(self) -> bool:
        return self.git.is_empty()


def select_pending(
    patches: Iterable[LedgerTracked],
    ledger: CommitLedger,
    limit: Optional[int] = None,
) -> List[LedgerTracked]:
    """Patches not yet in the ledger, in upstream order, capped to limit."""
    if ledger.is_target_empty():
        pending = list(patches)
    else:
        pending = [p for p in patches if p.is_pending(ledger)]
    if limit is not None:
        pending = pending[: max(limit, 0)]
    return pending


# ---------- Import engine ----------


class PatchState(enum.Enum):
    PENDING = "pending"
    PULLING = "pulling"
    CLEAN = "clean"
    CONFLICTED = "conflicted"
    REVERTING = "reverting"
    CLEAN_AFTER_REVERT = "clean after revert"
    UNRECOVERABLE = "unrecoverable"
    COMMITTING = "committing"
    TAGGING = "tagging"
    RECORDED = "recorded"


class PatchImporter:
    """
    Applies patches one at a time: pull into the working tree, check for
    conflicts, commit or tag, then record the result in the ledger.
    """

    def __init__(
        self,
        darcs: DarcsRepo,
        git: GitRepo,
        ledger: CommitLedger,
        authors: AuthorMap,
        source: str,
        reporter: Optional[Reporter] = None,
        check_consistency: bool = True,
        clean_messages: bool = False,
    ):
        self.darcs = darcs
        self.git = git
        self.ledger = ledger
        self.authors = authors
        self.source = source
        self.reporter = reporter or Reporter()
        self.check_consistency = check_consistency
        self.clean_messages = clean_messages
        self.state = PatchState.PENDING

    def _enter(self, state: PatchState):
        self.state = state
        self.reporter.debug(f"  [{state.value}]")

    def run(self, patches: Sequence[PatchRecord]) -> int:
        total = len(patches)
        if not total:
            self.reporter.info("No new patches to import.")
        for index, patch in enumerate(patches, 1):
            self.reporter.info(f"Importing patch {index} of {total}: {patch.name}")
            try:
                self.import_patch(patch)
            except Darcs2GitError:
                self.reporter.error(f"while importing {patch.describe()}")
                raise
        return total

    def import_patch(self, patch: PatchRecord) -> str:
        self._enter(PatchState.PENDING)
        if self.check_consistency:
            self.ensure_clean("before pulling")
        self._enter(PatchState.PULLING)
        self.darcs.pull(self.source, patch.identifier)
        if self.check_consistency:
            if self.darcs.is_clean():
                self._enter(PatchState.CLEAN)
            else:
                self._enter(PatchState.CONFLICTED)
                self.recover_from_conflict(patch)
        target = self.commit(patch)
        self.ledger.record_commit(patch.identifier, target)
        self._enter(PatchState.RECORDED)
        return target

    def ensure_clean(self, when: str):
        status = self.darcs.status() + self.git.status()
        if status.strip():
            raise DirtyTreeError(f"working tree has local changes {when}:", status)

    def recover_from_conflict(self, patch: PatchRecord):
        """Revert once; a tree that is still dirty afterwards is fatal."""
        self.reporter.warn(f"conflicts pulling {patch.identifier}; reverting working tree")
        self._enter(PatchState.REVERTING)
        self.darcs.revert_all()
        for path in self.darcs.remove_backups():
            self.reporter.debug(f"removed backup {path}")
        status = self.darcs.status()
        if status.strip():
            self._enter(PatchState.UNRECOVERABLE)
            raise UnrecoverableConflictError("working tree still dirty after revert:", status)
        self._enter(PatchState.CLEAN_AFTER_REVERT)

    def commit(self, patch: PatchRecord) -> str:
        env = patch.git_environment(self.authors)
        message = patch.commit_message(clean=self.clean_messages)
        if patch.is_tag:
            self._enter(PatchState.TAGGING)
            head = self.git.head()
            if head == NO_COMMIT:
                self.reporter.warn(f"cannot tag empty repository; skipping tag {patch.tag_name}")
            else:
                self.git.tag(patch.tag_name, message, env)
            return head
        self._enter(PatchState.COMMITTING)
        if not self.git.commit_all(message, env):
            self.reporter.info("  nothing to commit")
        return self.git.head()


# ---------- Checks ----------


def compare_trees(source: str, target: str, reporter: Optional[Reporter] = None):
    """Fail when the imported tree differs from the source working tree."""
    result = run_command(
        ["diff", "-r", "-q", "-x", "_darcs", "-x", ".git", source, target],
        check=False,
        reporter=reporter,
    )
    if result.returncode == 1:
        raise TreeMismatchError(
            f"imported tree differs from {source}:\n{result.stdout.rstrip()}"
        )
    if result.returncode != 0:
        raise CommandError(result.args, result.returncode, result.stderr.strip())


def prepare_target(git: GitRepo, darcs: DarcsRepo, source: DarcsRepo, reporter: Reporter):
    if not git.is_repository():
        reporter.info(f"Initializing git repository in {git.path}")
        git.initialize()
    git.ensure_excluded("_darcs")
    if not darcs.is_repository():
        reporter.info(f"Initializing darcs repository in {darcs.path}")
        darcs.initialize(darcs_init_flags(source.format(), reporter))


def list_authors(patches: Iterable[PatchRecord], authors: AuthorMap, out=None):
    """Print raw author -> resolved identity as YAML, ready to edit into an author map."""
    out = out if out is not None else sys.stdout
    mapping: Dict[str, str] = {}
    for patch in sorted(patches, key=lambda p: p.sort_key):
        if patch.author in mapping:
            continue
        name, email = patch.identity(authors)
        mapping[patch.author] = f"{name} <{email}>" if email else name
    out.write(yaml.safe_dump(mapping, default_flow_style=False, allow_unicode=True))


# ---------- CLI ----------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Import darcs patches into the git repository in the current directory."
    )
    parser.add_argument("source", help="darcs repository to import from")
    parser.add_argument(
        "--num-patches", "-n", type=int, help="import at most this many patches"
    )
    parser.add_argument(
        "--default-author",
        default=DEFAULT_AUTHOR,
        help=f"author name when a patch has none (default {DEFAULT_AUTHOR!r})",
    )
    parser.add_argument(
        "--default-email",
        default=DEFAULT_EMAIL,
        help="email address when a patch author has none",
    )
    parser.add_argument(
        "--author-map",
        help="YAML file mapping darcs authors to `Full Name <email>`",
    )
    parser.add_argument(
        "--list-authors",
        action="store_true",
        help="print the darcs authors and their git identities, then exit",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="show every command run"
    )
    parser.add_argument(
        "--quiet", "-q", action="store_true", help="only print warnings and errors"
    )
    parser.add_argument(
        "--no-consistency-checks",
        dest="check_consistency",
        action="store_false",
        help="skip working tree checks before and after each pull",
    )
    parser.add_argument(
        "--clean-commit-messages",
        action="store_true",
        help="leave darcs-hash and Ignore-this lines out of commit messages",
    )
    return parser


def import_repository(args: argparse.Namespace, reporter: Reporter) -> int:
    source_repo = DarcsRepo(args.source, reporter)
    if not source_repo.is_repository():
        raise Darcs2GitError(f"{source_repo.path} is not a darcs repository")
    authors = AuthorMap.load(args.author_map, args.default_author, args.default_email, reporter)
    patches = source_repo.changes()

    if args.list_authors:
        list_authors(patches, authors)
        return 0

    target = os.getcwd()
    git = GitRepo(target, reporter)
    darcs = DarcsRepo(target, reporter)
    prepare_target(git, darcs, source_repo, reporter)
    ledger = CommitLedger.load(os.path.join(target, PATCH_MAP_FILE), git, reporter)

    pending = select_pending(patches, ledger, args.num_patches)
    reporter.info(f"{len(patches)} patches upstream, {len(pending)} to import")
    importer = PatchImporter(
        darcs,
        git,
        ledger,
        authors,
        source_repo.path,
        reporter,
        check_consistency=args.check_consistency,
        clean_messages=args.clean_commit_messages,
    )
    importer.run(pending)

    if args.check_consistency and args.num_patches is None:
        compare_trees(source_repo.path, target, reporter)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    verbosity = Reporter.NORMAL
    if args.quiet:
        verbosity = Reporter.QUIET
    if args.verbose:
        verbosity = Reporter.VERBOSE
    reporter = Reporter(verbosity)
    try:
        return import_repository(args, reporter)
    except Darcs2GitError as e:
        reporter.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
