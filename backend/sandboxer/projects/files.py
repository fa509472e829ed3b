from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
from pathlib import Path
from typing import Any

from sandboxer.core.logging import get_logger

log = get_logger(__name__)

IMAGES_FILENAME = ".sandbox-images.json"
OPENCODE_CONFIG_FILENAME = "opencode.json"
DIST_DIRNAME = "dist"
_HASH_RE = re.compile(r"^[0-9a-f]{8}$")


def project_path(projects_dir: Path, project_id: str) -> Path:
    return Path(projects_dir) / project_id


def production_root(production_dir: Path, project_id: str) -> Path:
    return Path(production_dir) / project_id


def production_path(production_dir: Path, project_id: str, production_hash: str) -> Path:
    if not _HASH_RE.match(production_hash or ""):
        raise ValueError("production_hash must be 8 hex characters")
    return production_root(production_dir, project_id) / production_hash


def copy_template(template_dir: Path, target: Path) -> None:
    """Copy the starter template into ``target``; existing files are overwritten."""

    template_dir = Path(template_dir)
    if not template_dir.is_dir():
        raise FileNotFoundError(f"template not found at {template_dir}")
    shutil.copytree(template_dir, target, dirs_exist_ok=True)
    (Path(target) / "logs").mkdir(parents=True, exist_ok=True)


def _atomic_write(path: Path, content: str) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)


def write_project_env(
    target: Path,
    *,
    dev_port: int,
    opencode_port: int,
    provider_api_key: str,
    sandbox_network: str,
) -> Path:
    path = Path(target) / ".env"
    lines = [
        "# generated by sandboxer",
        f"DEV_PORT={int(dev_port)}",
        f"OPENCODE_PORT={int(opencode_port)}",
        f"PROVIDER_API_KEY={provider_api_key}",
        f"SANDBOX_NETWORK={sandbox_network}",
    ]
    _atomic_write(path, "\n".join(lines) + "\n")
    path.chmod(0o600)
    return path


def read_opencode_config(target: Path) -> dict[str, Any]:
    path = Path(target) / OPENCODE_CONFIG_FILENAME
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except ValueError:
        log.warning("opencode_config_invalid path=%s", path)
        return {}
    return data if isinstance(data, dict) else {}


def write_opencode_model(target: Path, model: str) -> bool:
    """Set ``model`` in the project's ``opencode.json``; returns False when the file cannot be updated."""

    path = Path(target) / OPENCODE_CONFIG_FILENAME
    config = read_opencode_config(target)
    config["model"] = model
    try:
        _atomic_write(path, json.dumps(config, indent=2) + "\n")
    except OSError as exc:
        log.warning("opencode_config_write_failed path=%s err=%s", path, exc)
        return False
    return True


def write_images(target: Path, images: list[dict[str, Any]]) -> Path | None:
    if not images:
        return None
    path = Path(target) / IMAGES_FILENAME
    _atomic_write(path, json.dumps(images, ensure_ascii=False))
    return path


def read_images(target: Path) -> list[dict[str, Any]]:
    path = Path(target) / IMAGES_FILENAME
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []
    except ValueError:
        log.warning("project_images_invalid path=%s", path)
        return []
    return [d for d in data if isinstance(d, dict)] if isinstance(data, list) else []


def delete_images(target: Path) -> None:
    (Path(target) / IMAGES_FILENAME).unlink(missing_ok=True)


def hash_dist_folder(dist: Path) -> str:
    """Content hash of a build output folder: first 8 hex chars of a sha256.

    Files are visited in sorted relative-path order and both the path and the
    bytes feed the digest, so identical builds always hash the same.
    """

    dist = Path(dist)
    if not dist.is_dir():
        raise FileNotFoundError(f"build output not found at {dist}")
    digest = hashlib.sha256()
    files = sorted((p for p in dist.rglob("*") if p.is_file()), key=lambda p: p.relative_to(dist).as_posix())
    for file in files:
        digest.update(file.relative_to(dist).as_posix().encode("utf-8"))
        digest.update(b"\0")
        digest.update(file.read_bytes())
    return digest.hexdigest()[:8]


def copy_production_artifacts(source: Path, dest: Path) -> Path:
    """Copy the project (minus dependencies and logs) into a versioned production folder."""

    ignore = shutil.ignore_patterns("node_modules", ".git", "logs", IMAGES_FILENAME)
    shutil.copytree(source, dest, ignore=ignore, dirs_exist_ok=True)
    (Path(dest) / "logs").mkdir(parents=True, exist_ok=True)
    return Path(dest)


def list_production_hashes(production_dir: Path, project_id: str) -> list[str]:
    """Deployed versions of a project, newest first."""

    root = production_root(production_dir, project_id)
    if not root.is_dir():
        return []
    entries = [p for p in root.iterdir() if p.is_dir() and _HASH_RE.match(p.name)]
    entries.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return [p.name for p in entries]


def cleanup_old_production_versions(
    production_dir: Path,
    project_id: str,
    *,
    current_hash: str | None,
    keep: int = 2,
) -> list[str]:
    removed: list[str] = []
    for production_hash in list_production_hashes(production_dir, project_id)[keep:]:
        if production_hash == current_hash:
            continue
        if remove_tree(production_path(production_dir, project_id, production_hash)):
            removed.append(production_hash)
    if removed:
        log.info("production_versions_removed project_id=%s hashes=%s", project_id, ",".join(removed))
    return removed


def remove_tree(path: Path) -> bool:
    """Best-effort recursive delete; returns False when anything could not be removed."""

    path = Path(path)
    if not path.exists():
        return True
    try:
        shutil.rmtree(path)
    except OSError as exc:
        log.warning("remove_tree_failed path=%s err=%s", path, exc)
        return False
    return True
