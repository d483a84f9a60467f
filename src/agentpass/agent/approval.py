"""
agent/approval.py — Command approval

Two pieces:
  - CommandApprovalPolicy: decides whether a command is safe to run
    without asking. Pre-approval requires a plain single command (no
    chaining, pipes, substitution, redirection or sudo) whose executable is
    on the allowlist, plus per-tool argument rules (no `sed -i`, no
    `find -exec`, read-only curl/wget, bounded ping). Session approvals are
    keyed by an exact (shell, run, cwd) signature.
  - ApprovalManager: auto-approves via allowlist -> session -> flag, and
    otherwise asks the human to pick run-once / run-for-session / reject.
"""

from __future__ import annotations

import json
import os
import re
import shlex
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from agentpass.agent.plan import PlanCommand
from agentpass.agent.types import AskHumanFn, EmitEvent, noop_emit
from agentpass.config.settings import AllowlistEntry
from agentpass.exceptions import ApprovalError
from agentpass.observability.logger import get_logger

log = get_logger(__name__)

APPROVE_ONCE = "approve_once"
APPROVE_SESSION = "approve_session"
REJECT = "reject"

APPROVAL_PROMPT = "\n".join([
    "Approve running this command?",
    "  1) Yes (run once)",
    "  2) Yes, for entire session (add to in-memory approvals)",
    "  3) No, tell the AI to do something else",
    "Select 1, 2, or 3: ",
])
INVALID_CHOICE_MESSAGE = "Please enter 1, 2, or 3."


# ─────────────────────────────────────────────────────────────────────────────
# Safety rules
# ─────────────────────────────────────────────────────────────────────────────

# Any match makes a command string ineligible for pre-approval
FORBIDDEN_PATTERNS: list[re.Pattern] = [
    re.compile(r"\r|\n"),
    re.compile(r";|&&|\|\|"),                   # chaining
    re.compile(r"\|"),                          # pipes
    re.compile(r"`"),                           # legacy substitution
    re.compile(r"\$\("),                        # substitution
    re.compile(r"<\s*\("),                      # process substitution
    re.compile(r">\s*\("),
    re.compile(r"(^|[^&])&([^&]|$)"),           # background job
    re.compile(r"<<<"),                         # here-string
    re.compile(r"<<"),                          # here-doc
    re.compile(r"&>"),
    re.compile(r"^\s*sudo\b"),
    re.compile(r"(^|\s)[0-9]*>>?\s"),           # redirection to a file
    re.compile(r"\d?>&\d?"),                    # fd duplication
]

# Interpreters whose allowlisted subcommand must be the last token
_NO_TRAILING_ARGS = {"python", "python3", "pip", "node", "npm"}
_ALLOWED_SHELLS = {"bash", "sh"}

_CURL_WRITE_METHOD = re.compile(r"(^|\s)-X\s*(POST|PUT|PATCH|DELETE)\b", re.IGNORECASE)
_CURL_DATA_FLAGS = re.compile(
    r"(^|\s)(--data(-binary|-raw|-urlencode)?|-d|--form|-F|--upload-file|-T)\b",
    re.IGNORECASE,
)
_CURL_REMOTE_NAME = re.compile(r"(^|\s)(-O|--remote-name|--remote-header-name)\b")


def is_command_string_safe(raw: object) -> bool:
    if not isinstance(raw, str):
        return False
    text = raw.strip()
    if not text:
        return False
    return not any(pattern.search(text) for pattern in FORBIDDEN_PATTERNS)


def command_signature(command: Optional[PlanCommand]) -> str:
    shell = (command.shell or "").strip() if command else ""
    cwd = (command.cwd or "").strip() if command else ""
    return json.dumps({
        "shell": shell or "bash",
        "run": command.run if command else "",
        "cwd": cwd or ".",
    })


def _writes_output_file(args: list[str], option: str) -> bool:
    for index, token in enumerate(args):
        if token == option:
            destination = args[index + 1] if index + 1 < len(args) else ""
            if destination != "-":
                return True
    return False


def _curl_allowed(args: list[str], joined: str) -> bool:
    if _CURL_WRITE_METHOD.search(joined) or _CURL_DATA_FLAGS.search(joined):
        return False
    if _CURL_REMOTE_NAME.search(joined):
        return False
    if _writes_output_file(args, "-o") or _writes_output_file(args, "--output"):
        return False
    return not any(t.startswith("-o") and len(t) > 2 for t in args)


def _wget_allowed(args: list[str], joined: str) -> bool:
    if re.search(r"\s--spider\b", joined):
        return True
    if _writes_output_file(args, "-O") or _writes_output_file(args, "--output-document"):
        return False
    return not any(t.startswith("-O") and t != "-O" for t in args)


def _ping_allowed(args: list[str]) -> bool:
    if "-c" not in args:
        return False
    index = args.index("-c")
    try:
        count = int(args[index + 1])
    except (IndexError, ValueError):
        return False
    return 1 <= count <= 3


def passes_command_specific_rules(base: str, tokens: list[str]) -> bool:
    args = tokens[1:]
    joined = f" {' '.join(args)} "
    if base == "sed":
        return not re.search(r"(^|\s)-i(\b|\s)", joined)
    if base == "find":
        return not (re.search(r"\s-exec\b", joined) or re.search(r"\s-delete\b", joined))
    if base == "curl":
        return _curl_allowed(args, joined)
    if base == "wget":
        return _wget_allowed(args, joined)
    if base == "ping":
        return _ping_allowed(args)
    return True


# ─────────────────────────────────────────────────────────────────────────────
# Policy
# ─────────────────────────────────────────────────────────────────────────────


class CommandApprovalPolicy:
    """Allowlist evaluation plus the in-memory session approval cache."""

    def __init__(self, allowlist: Iterable[AllowlistEntry] = ()):
        self.allowlist: list[AllowlistEntry] = list(allowlist)
        self._session: set[str] = set()

    def is_preapproved(self, command: Optional[PlanCommand]) -> bool:
        if command is None:
            return False
        run = (command.run or "").strip()
        if not run or not is_command_string_safe(run):
            return False
        if isinstance(command.shell, str) and command.shell.strip().lower() not in _ALLOWED_SHELLS:
            return False
        try:
            tokens = shlex.split(run)
        except ValueError:
            return False
        if not tokens:
            return False

        base = os.path.basename(tokens[0])
        entry = next((e for e in self.allowlist if e.name == base), None)
        if entry is None:
            return False

        if entry.subcommands:
            sub = next((t for t in tokens[1:] if not t.startswith("-")), "")
            if sub not in entry.subcommands:
                return False
            if base in _NO_TRAILING_ARGS and tokens.index(sub) < len(tokens) - 1:
                return False

        return passes_command_specific_rules(base, tokens)

    def is_session_approved(self, command: Optional[PlanCommand]) -> bool:
        return command is not None and command_signature(command) in self._session

    def approve_for_session(self, command: PlanCommand) -> None:
        self._session.add(command_signature(command))

    def reset_session(self) -> None:
        self._session.clear()


# ─────────────────────────────────────────────────────────────────────────────
# Manager
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class AutoApproval:
    approved: bool
    source: Optional[str] = None        # "allowlist" | "session" | "flag"


@dataclass
class ApprovalOutcome:
    decision: str
    reason: Optional[str] = None

    @property
    def rejected(self) -> bool:
        return self.decision == REJECT


def parse_decision(raw: Optional[str]) -> Optional[str]:
    text = (raw or "").strip().lower()
    if text in ("1", "y", "yes"):
        return APPROVE_ONCE
    if text == "2":
        return APPROVE_SESSION
    if text in ("3", "n", "no"):
        return REJECT
    return None


class ApprovalManager:

    def __init__(
        self,
        policy: CommandApprovalPolicy,
        ask_human: Optional[AskHumanFn] = None,
        get_auto_approve_flag: Callable[[], bool] = lambda: False,
        emit_event: EmitEvent = noop_emit,
        max_prompts: Optional[int] = None,
    ):
        self.policy = policy
        self._ask_human = ask_human
        self._auto_flag = get_auto_approve_flag
        self._emit = emit_event
        self._max_prompts = max_prompts

    def should_auto_approve(self, command: Optional[PlanCommand]) -> AutoApproval:
        if command is None:
            return AutoApproval(approved=False)
        if self.policy.is_preapproved(command):
            return AutoApproval(approved=True, source="allowlist")
        if self.policy.is_session_approved(command):
            return AutoApproval(approved=True, source="session")
        if self._auto_flag():
            return AutoApproval(approved=True, source="flag")
        return AutoApproval(approved=False)

    async def request_human_decision(self, command: PlanCommand) -> ApprovalOutcome:
        if self._ask_human is None:
            raise ApprovalError("Command requires approval but no human input channel is configured.")

        prompts = 0
        while True:
            self._emit({
                "type": "request-input",
                "prompt": APPROVAL_PROMPT,
                "metadata": {"scope": "approval", "command": command.to_dict()},
            })
            decision = parse_decision(await self._ask_human(APPROVAL_PROMPT))
            prompts += 1

            if decision == APPROVE_ONCE:
                log.info("approval.approved_once", run=command.run)
                return ApprovalOutcome(decision=APPROVE_ONCE)
            if decision == APPROVE_SESSION:
                self.policy.approve_for_session(command)
                log.info("approval.approved_session", run=command.run)
                return ApprovalOutcome(decision=APPROVE_SESSION)
            if decision == REJECT:
                log.info("approval.rejected", run=command.run)
                return ApprovalOutcome(decision=REJECT, reason="human_declined")

            self._emit({"type": "status", "level": "warn", "message": INVALID_CHOICE_MESSAGE, "details": None})
            if self._max_prompts is not None and prompts >= self._max_prompts:
                log.warning("approval.prompt_limit_reached", run=command.run, prompts=prompts)
                return ApprovalOutcome(decision=REJECT, reason="no_valid_answer")
