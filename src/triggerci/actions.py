# actions.py
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .artifacts import ArtifactStore
from .errors import ActionNotFoundError, ArtifactExistsError, ArtifactNotFoundError
from .runners import StepOutcome

log = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"

VALID_REACTIONS = {"+1", "-1", "laugh", "confused", "heart", "hooray", "rocket", "eyes"}


@dataclass
class ActionCall:
    """Everything an action sees: its `with:` params, the step env, the runner's workspace."""
    params: Dict[str, Any]
    env: Dict[str, str]
    workspace: Path
    artifacts: Optional[ArtifactStore] = None

    def param(self, name: str, default: Any = None) -> Any:
        value = self.params.get(name)
        if value is None or value == "":
            return default
        return value

    def require(self, name: str) -> Any:
        value = self.param(name)
        if value is None:
            raise ValueError(f"missing required input '{name}'")
        return value


Action = Callable[[ActionCall], StepOutcome]


class ActionRegistry:
    """
    Maps `uses:` references to callables.

    References look like `owner/name@ref`; the `@ref` part is ignored, the
    lookup is case-insensitive.
    """

    def __init__(self) -> None:
        self._actions: Dict[str, Action] = {}

    @staticmethod
    def _key(ref: str) -> str:
        return ref.split("@", 1)[0].strip().lower()

    def register(self, name: str, action: Action, *aliases: str) -> None:
        for n in (name, *aliases):
            self._actions[self._key(n)] = action

    def action(self, name: str, *aliases: str) -> Callable[[Action], Action]:
        """Decorator form of `register`."""
        def deco(fn: Action) -> Action:
            self.register(name, fn, *aliases)
            return fn
        return deco

    def resolve(self, ref: str) -> Action:
        try:
            return self._actions[self._key(ref)]
        except KeyError:
            raise ActionNotFoundError(f"unknown action '{ref}'") from None

    def names(self) -> List[str]:
        return sorted(self._actions)


def _lines(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [line.strip() for line in str(value or "").splitlines() if line.strip()]


# ---------------------------------------------------------------------
# Artifact actions
# ---------------------------------------------------------------------

def upload_artifact(call: ActionCall) -> StepOutcome:
    if call.artifacts is None:
        return StepOutcome(exit_code=1, log="no artifact store configured on this runner")
    name = call.param("name", "artifact")
    paths = _lines(call.require("path"))
    try:
        info = call.artifacts.upload(name, paths, base=call.workspace)
    except (ArtifactExistsError, ArtifactNotFoundError, ValueError) as e:
        return StepOutcome(exit_code=1, log=str(e))
    return StepOutcome(
        exit_code=0,
        outputs={"artifact-name": info.name, "file-count": str(len(info.files))},
        log=f"uploaded {len(info.files)} file(s) as '{info.name}'",
    )


def download_artifact(call: ActionCall) -> StepOutcome:
    if call.artifacts is None:
        return StepOutcome(exit_code=1, log="no artifact store configured on this runner")
    name = call.require("name")
    dest = call.workspace / call.param("path", ".")
    try:
        files = call.artifacts.download(name, dest)
    except (ArtifactNotFoundError, ValueError) as e:
        return StepOutcome(exit_code=1, log=str(e))
    return StepOutcome(
        exit_code=0,
        outputs={"download-path": str(dest)},
        log=f"downloaded {len(files)} file(s) from '{name}'",
    )


# ---------------------------------------------------------------------
# Issue comments
# ---------------------------------------------------------------------

def _api_request(url: str, token: str, data: dict, method: str = "POST") -> dict:
    req = urllib.request.Request(
        url,
        data=json.dumps(data).encode("utf-8"),
        headers={
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        },
        method=method,
    )
    with urllib.request.urlopen(req) as response:
        body = response.read().decode("utf-8")
        return json.loads(body) if body else {}


def create_or_update_comment(call: ActionCall) -> StepOutcome:
    """
    Create a comment on an issue (or update `comment-id` when given) and
    optionally react to it.

    Inputs: token, repository (owner/name), issue-number, comment-id, body,
    reactions (comma or newline separated), api-url.
    """
    token = call.param("token") or call.env.get("GITHUB_TOKEN")
    if not token:
        return StepOutcome(exit_code=1, log="no token: set `with.token` or GITHUB_TOKEN")
    repository = call.param("repository") or call.env.get("GITHUB_REPOSITORY")
    if not repository or "/" not in str(repository):
        return StepOutcome(exit_code=1, log=f"repository must look like owner/name, got {repository!r}")

    api = str(call.param("api-url") or call.env.get("GITHUB_API_URL") or DEFAULT_API_URL).rstrip("/")
    body = call.param("body")
    comment_id = call.param("comment-id")
    reactions = [r for chunk in _lines(call.param("reactions", "")) for r in chunk.split(",") if r.strip()]
    reactions = [r.strip() for r in reactions]
    bad = [r for r in reactions if r not in VALID_REACTIONS]
    if bad:
        return StepOutcome(exit_code=1, log=f"unsupported reaction(s): {bad}")

    try:
        if comment_id:
            if body:
                _api_request(f"{api}/repos/{repository}/issues/comments/{comment_id}", token, {"body": body}, "PATCH")
        else:
            issue = call.require("issue-number")
            if not body:
                return StepOutcome(exit_code=1, log="missing required input 'body'")
            created = _api_request(f"{api}/repos/{repository}/issues/{issue}/comments", token, {"body": body})
            comment_id = created.get("id")

        for reaction in reactions:
            _api_request(
                f"{api}/repos/{repository}/issues/comments/{comment_id}/reactions",
                token,
                {"content": reaction},
            )
    except urllib.error.HTTPError as e:
        detail = e.read().decode("utf-8") if e.fp else ""
        return StepOutcome(exit_code=1, log=f"API request failed: {e.code} {e.reason}. {detail}")
    except urllib.error.URLError as e:
        return StepOutcome(exit_code=1, log=f"Network error: {e.reason}")
    except ValueError as e:
        return StepOutcome(exit_code=1, log=str(e))

    log.info("comment %s written on %s", comment_id, repository)
    return StepOutcome(exit_code=0, outputs={"comment-id": str(comment_id)}, log=f"comment-id={comment_id}")


def default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("triggerci/upload-artifact", upload_artifact, "actions/upload-artifact")
    registry.register("triggerci/download-artifact", download_artifact, "actions/download-artifact")
    registry.register(
        "triggerci/create-or-update-comment",
        create_or_update_comment,
        "peter-evans/create-or-update-comment",
    )
    return registry
