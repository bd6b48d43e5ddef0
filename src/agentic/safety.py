from __future__ import annotations

import fnmatch
import posixpath
import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import IntEnum

from agentic.plan import Plan, ResolvedCommand

DEFAULT_DANGEROUS_COMMANDS = (
    "rm -rf /",
    "del /s /q c:",
    "format c:",
    "shutdown",
    "reboot",
    "dd if=",
    "mkfs.",
    "> /dev/",
    "chmod 777 /",
    "chown root /",
)
DEFAULT_ALLOWED_DIRECTORIES = ("~/", "./", "/tmp/")
DIRECTORY_COMMANDS = {"cd", "pushd"}
STATEMENT_SEPARATOR = re.compile(r"&&|\|\||[;|\n]")
WHITESPACE = re.compile(r"\s+")
UNRESOLVABLE_PATH = re.compile(r"[$`*?\[]")
WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:/")


class VerdictKind(IntEnum):
    ALLOWED = 0
    NEEDS_CONFIRMATION = 1
    BLOCKED = 2


@dataclass(frozen=True, slots=True)
class SafetyPolicy:
    dangerous_commands: tuple[str, ...] = DEFAULT_DANGEROUS_COMMANDS
    allowed_directories: tuple[str, ...] = DEFAULT_ALLOWED_DIRECTORIES
    require_confirmation: bool = True
    auto_confirm: bool = False
    enable_safety_checks: bool = True


@dataclass(frozen=True, slots=True)
class SafetyVerdict:
    kind: VerdictKind
    reason: str = ""
    command: str = ""

    @classmethod
    def allowed(cls, command: str = "") -> SafetyVerdict:
        return cls(VerdictKind.ALLOWED, "", command)

    @classmethod
    def needs_confirmation(cls, reason: str, command: str = "") -> SafetyVerdict:
        return cls(VerdictKind.NEEDS_CONFIRMATION, reason, command)

    @classmethod
    def blocked(cls, reason: str, command: str = "") -> SafetyVerdict:
        return cls(VerdictKind.BLOCKED, reason, command)

    @property
    def is_allowed(self) -> bool:
        return self.kind is VerdictKind.ALLOWED

    @property
    def is_blocked(self) -> bool:
        return self.kind is VerdictKind.BLOCKED

    @property
    def requires_confirmation(self) -> bool:
        return self.kind is VerdictKind.NEEDS_CONFIRMATION

    def describe(self) -> str:
        label = self.kind.name.lower().replace("_", " ")
        if self.reason:
            return f"{label}: {self.reason}"
        return label


@dataclass(frozen=True, slots=True)
class PlanVerdict:
    verdict: SafetyVerdict
    step_verdicts: tuple[SafetyVerdict, ...] = field(default_factory=tuple)

    @property
    def kind(self) -> VerdictKind:
        return self.verdict.kind

    @property
    def reason(self) -> str:
        return self.verdict.reason

    @property
    def command(self) -> str:
        return self.verdict.command


class SafetyBlockedError(RuntimeError):
    """Raised when a resolved command matches a dangerous-command pattern."""

    def __init__(self, reason: str, command: str) -> None:
        super().__init__(f"Refusing to execute '{command}': {reason}")
        self.reason = reason
        self.command = command


def _normalize(text: str) -> str:
    return WHITESPACE.sub(" ", text.strip().lower())


def match_dangerous_pattern(command: str, patterns: Iterable[str]) -> str | None:
    normalized = _normalize(command)
    for pattern in patterns:
        needle = _normalize(pattern)
        if needle and needle in normalized:
            return pattern
    return None


def directory_targets(command: str) -> list[str | None]:
    """Return directories a command changes into.

    ``None`` marks a target that cannot be determined from the text alone.
    """
    targets: list[str | None] = []
    for segment in STATEMENT_SEPARATOR.split(command):
        segment = segment.strip()
        if not segment:
            continue
        try:
            tokens = shlex.split(segment)
        except ValueError:
            if segment.split(maxsplit=1)[0] in DIRECTORY_COMMANDS:
                targets.append(None)
            continue
        if not tokens or tokens[0] not in DIRECTORY_COMMANDS:
            continue
        arguments = [token for token in tokens[1:] if token == "-" or not token.startswith("-")]
        if not arguments:
            targets.append("~")
        elif arguments[0] == "-" or UNRESOLVABLE_PATH.search(arguments[0]):
            targets.append(None)
        else:
            targets.append(arguments[0])
    return targets


def _absolute(path: str, base: str | None, home: str | None = None) -> str | None:
    """Normalise ``path`` to an absolute POSIX path, or ``None`` if the text alone cannot."""
    path = path.replace("\\", "/")
    if path == "~" or path.startswith("~/"):
        if home is None:
            return None
        path = home.replace("\\", "/").rstrip("/") + path[1:]
    elif path.startswith("~"):
        return None
    if not posixpath.isabs(path) and not WINDOWS_DRIVE.match(path):
        if base is None:
            return None
        path = posixpath.join(base, path)
    return posixpath.normpath(path)


def is_directory_allowed(
    directory: str,
    allowed_directories: Iterable[str],
    *,
    base: str | None = None,
    home: str | None = None,
) -> bool:
    """Check ``directory`` against the allow-list.

    Relative paths resolve against ``base`` and ``~`` against ``home``; when
    either is needed but missing the directory counts as not allowed.
    """
    allowed = list(allowed_directories)
    if not allowed:
        return True
    base_path = _absolute(base, None, home) if base else None
    target = _absolute(directory, base_path, home)
    if target is None:
        return False
    for entry in allowed:
        root = _absolute(entry, base_path, home)
        if root is None:
            continue
        if any(marker in entry for marker in "*?["):
            if fnmatch.fnmatch(target, root):
                return True
            continue
        if target == root or target.startswith(root.rstrip("/") + "/"):
            return True
    return False


def _check_directories(
    text: str,
    policy: SafetyPolicy,
    working_directory: str | None,
    home: str | None,
    base_directory: str | None,
) -> tuple[SafetyVerdict | None, str | None]:
    """Walk the directory changes of one command.

    Returns the downgrade verdict, if any, and the directory the command
    leaves the shell in (``None`` once it can no longer be determined).
    """
    allowed = policy.allowed_directories
    current = _absolute(working_directory, None, home) if working_directory else None
    verdict: SafetyVerdict | None = None
    if (
        working_directory
        and allowed
        and not is_directory_allowed(working_directory, allowed, base=base_directory, home=home)
    ):
        verdict = SafetyVerdict.needs_confirmation(
            f"working directory '{working_directory}' is outside the allowed directories", text
        )
    for target in directory_targets(text):
        resolved = None if target is None else _absolute(target, current, home)
        if verdict is None and allowed:
            if resolved is None:
                verdict = SafetyVerdict.needs_confirmation(
                    "changes into a directory that cannot be verified", text
                )
            elif not is_directory_allowed(resolved, allowed, base=base_directory, home=home):
                verdict = SafetyVerdict.needs_confirmation(
                    f"changes into '{target}' outside the allowed directories", text
                )
        current = resolved
    return verdict, current


def validate(
    command: ResolvedCommand | str,
    policy: SafetyPolicy,
    working_directory: str | None = None,
    *,
    home: str | None = None,
    base_directory: str | None = None,
) -> SafetyVerdict:
    """Classify one command using nothing but its text and the arguments.

    Dangerous patterns always block. ``enable_safety_checks`` only turns off
    the directory checks. Relative targets resolve against
    ``working_directory`` and relative allow-list entries against
    ``base_directory`` (default: ``working_directory``); a target that needs a
    missing directory or ``home`` cannot be verified and asks for confirmation.
    """
    text = command.command if isinstance(command, ResolvedCommand) else command
    matched = match_dangerous_pattern(text, policy.dangerous_commands)
    if matched is not None:
        return SafetyVerdict.blocked(f"matches dangerous pattern '{matched}'", text)

    if policy.enable_safety_checks:
        verdict, _ = _check_directories(
            text, policy, working_directory, home, base_directory or working_directory
        )
        if verdict is not None:
            return verdict

    if policy.require_confirmation:
        return SafetyVerdict.needs_confirmation("confirmation required by policy", text)
    return SafetyVerdict.allowed(text)


def aggregate(verdicts: Iterable[SafetyVerdict]) -> SafetyVerdict:
    result = SafetyVerdict.allowed()
    for verdict in verdicts:
        if verdict.kind > result.kind:
            result = verdict
    return result


def validate_plan(
    plan: Plan,
    policy: SafetyPolicy,
    working_directory: str | None = None,
    *,
    home: str | None = None,
) -> PlanVerdict:
    """Validate every step from the directory the previous steps leave behind.

    Steps share one shell working directory at execution time, so a ``cd`` in
    one step moves the base the next step is checked against. Relative
    allow-list entries keep resolving against the starting directory.
    """
    step_verdicts: list[SafetyVerdict] = []
    current = working_directory
    for step in plan.steps:
        step_verdicts.append(
            validate(step, policy, current, home=home, base_directory=working_directory)
        )
        _, current = _check_directories(step.command, policy, current, home, working_directory)
    verdicts = tuple(step_verdicts)
    return PlanVerdict(verdict=aggregate(verdicts), step_verdicts=verdicts)


def ensure_not_blocked(verdict: SafetyVerdict | PlanVerdict) -> None:
    if verdict.kind is VerdictKind.BLOCKED:
        raise SafetyBlockedError(verdict.reason, verdict.command)
