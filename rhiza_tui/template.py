"""Template drift detection.

A repository generated from a rhiza template carries ``.rhiza/template.yml``::

    template-repository: jebel-quant/rhiza
    template-branch: main

Drift is the number of commits on the template branch that the local HEAD
does not contain yet. Everything here is advisory: failures end up in
``TemplateInfo.error`` or leave ``behind`` at 0, and never raise.
"""
import logging
import shlex
from pathlib import Path
from urllib.parse import urlsplit

import yaml

from .models import TemplateInfo
from .shell import CommandError, Runner, run_command

log = logging.getLogger(__name__)

TEMPLATE_MARKER = Path(".rhiza") / "template.yml"
DEFAULT_TEMPLATE_BRANCH = "main"
DEFAULT_HOST_URL = "https://github.com"
CANONICAL_REMOTES = ("template", "rhiza")
FALLBACK_REMOTE = "template"


class TemplateError(Exception):
    pass


def read_template_marker(marker: Path) -> tuple[str, str]:
    """Return ``(template-repository, template-branch)`` from a marker file."""
    try:
        data = yaml.safe_load(marker.read_text())
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise TemplateError(str(e)) from e

    if not isinstance(data, dict):
        raise TemplateError("template file is not a mapping")
    repository = data.get("template-repository")
    if not repository or not isinstance(repository, str):
        raise TemplateError("template-repository not set")
    branch = data.get("template-branch") or DEFAULT_TEMPLATE_BRANCH
    return repository.strip(), str(branch).strip()


def normalize_template_url(identifier: str) -> str:
    """Turn ``owner/name`` into a clone URL; URLs and SSH specs pass through."""
    if "://" in identifier or "@" in identifier:
        return identifier
    if "/" not in identifier:
        raise TemplateError("invalid repository format")
    slug = identifier.strip("/").removesuffix(".git")
    return f"{DEFAULT_HOST_URL}/{slug}.git"


def template_slug(url: str) -> str:
    """Extract ``owner/name`` from a clone URL or ``user@host:owner/name`` spec."""
    if "://" in url:
        path = urlsplit(url).path
    elif ":" in url:
        path = url.split(":", 1)[1]
    else:
        path = url
    return path.strip("/").removesuffix(".git")


def match_template_remote(remotes: list[tuple[str, str]], slug: str) -> str | None:
    """Pick the first remote whose URL contains the slug, or is contained in it.

    ``remotes`` is a list of ``(name, url)`` pairs in ``git remote`` order.
    Empty URLs never match.
    """
    for name, url in remotes:
        if url and (slug in url or url in slug):
            return name
    return None


def resolve_template_remote(repo_path: Path, remotes: list[str], url: str,
                            run: Runner = run_command) -> str:
    """Find (or create) the remote to compare against. Safe to repeat."""
    for name in CANONICAL_REMOTES:
        if name in remotes:
            return name

    # May already exist under another name; that's fine
    try:
        run(f"git remote add {FALLBACK_REMOTE} {shlex.quote(url)}", repo_path)
    except CommandError as e:
        log.debug("%s: could not add template remote: %s", repo_path, e)

    candidates = []
    for name in remotes:
        try:
            candidates.append((name, run(f"git remote get-url {shlex.quote(name)}", repo_path)))
        except CommandError:
            continue
    return match_template_remote(candidates, template_slug(url)) or FALLBACK_REMOTE


def check_template(repo_path: Path, run: Runner = run_command) -> TemplateInfo | None:
    marker = repo_path / TEMPLATE_MARKER
    if not marker.exists():
        return None

    try:
        identifier, branch = read_template_marker(marker)
        url = normalize_template_url(identifier)
    except TemplateError as e:
        return TemplateInfo(url="error", branch="", error=str(e))

    info = TemplateInfo(url=url, branch=branch)
    try:
        remotes = run("git remote", repo_path).split()
    except CommandError as e:
        log.debug("%s: cannot list remotes: %s", repo_path, e)
        return info

    remote = resolve_template_remote(repo_path, remotes, url, run)
    ref = f"{remote}/{branch}"
    try:
        run(f"git fetch {shlex.quote(remote)} {shlex.quote(branch)}", repo_path)
    except CommandError as e:
        log.debug("%s: fetch of %s failed: %s", repo_path, ref, e)

    try:
        info.behind = int(run(f"git rev-list --count HEAD..{shlex.quote(ref)}", repo_path))
    except (CommandError, ValueError) as e:
        log.debug("%s: cannot count commits behind %s: %s", repo_path, ref, e)
    return info
