"""Backend binary acquisition: pick, download, unpack, self-check and cache."""

import contextlib
import logging
import os
import platform
import shutil
import subprocess
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import requests

from .errors import DownloadFailed, ExtractFailed, NoUsableArtifact, ProvisionError

LOGGER = logging.getLogger("tunnel_router.provision")

MAX_REDIRECTS = 5
DOWNLOAD_TIMEOUT = (10, 60)
SELF_CHECK_TIMEOUT = 15.0
CHUNK_SIZE = 256 * 1024
BINARY_NAME = "xray"

# machine() aliases -> arch key
ARCH_ALIASES: Dict[str, str] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv8l": "arm",
    "armv7l": "arm",
    "armv6l": "arm",
    "armv5tel": "arm",
    "riscv64": "riscv64",
    "s390x": "s390x",
}

# arch key -> ranked (asset, required cpu flags)
RELEASE_ASSETS: Dict[str, List[Tuple[str, Tuple[str, ...]]]] = {
    "amd64": [("Xray-linux-64.zip", ()), ("Xray-linux-32.zip", ())],
    "386": [("Xray-linux-32.zip", ())],
    "arm64": [("Xray-linux-arm64-v8a.zip", ()), ("Xray-linux-arm32-v7a.zip", ("vfpv3",))],
    "arm": [
        ("Xray-linux-arm32-v7a.zip", ("vfpv3",)),
        ("Xray-linux-arm32-v6.zip", ("vfp",)),
        ("Xray-linux-arm32-v5.zip", ()),
    ],
    "riscv64": [("Xray-linux-riscv64.zip", ())],
    "s390x": [("Xray-linux-s390x.zip", ())],
}


@dataclass(frozen=True)
class ArtifactCandidate:
    arch_key: str
    source_url: str
    installed_path: Path
    executable_mode: int = 0o755
    member: Optional[str] = BINARY_NAME


def read_cpu_flags(cpuinfo_path: str = "/proc/cpuinfo") -> Set[str]:
    flags: Set[str] = set()
    try:
        with open(cpuinfo_path, "r", encoding="utf-8", errors="ignore") as fh:
            for line in fh:
                key, _, value = line.partition(":")
                if key.strip().lower() in ("flags", "features"):
                    flags.update(value.lower().split())
    except OSError:
        pass
    return flags


def detect_arch(machine: Optional[str] = None) -> str:
    machine = (machine or platform.machine() or "").lower()
    return ARCH_ALIASES.get(machine, "")


def candidates_for_platform(bin_dir: Path, base_url: str, artifact_url: str = "",
                            machine: Optional[str] = None,
                            cpu_flags: Optional[Set[str]] = None) -> List[ArtifactCandidate]:
    """Ranked candidates for the running machine; an explicit URL overrides the catalogue."""
    installed = Path(bin_dir) / BINARY_NAME
    arch = detect_arch(machine)
    if artifact_url:
        member = BINARY_NAME if _archive_kind(artifact_url) else None
        return [ArtifactCandidate(arch or "custom", artifact_url, installed, member=member)]
    assets = RELEASE_ASSETS.get(arch, [])
    flags = read_cpu_flags() if cpu_flags is None else cpu_flags
    if arch == "arm":
        # neon implies vfpv3 on every core that reports it
        if "neon" in flags:
            flags = set(flags) | {"vfpv3", "vfp"}
        if "vfpv3" in flags:
            flags = set(flags) | {"vfp"}
    ranked = [asset for asset, needs in assets if all(f in flags for f in needs)]
    ranked += [asset for asset, needs in assets if asset not in ranked and arch != "arm"]
    return [
        ArtifactCandidate(arch, f"{base_url.rstrip('/')}/{asset}", installed)
        for asset in ranked
    ]


def _archive_kind(url_or_name: str) -> str:
    name = url_or_name.lower().split("?", 1)[0]
    if name.endswith(".zip"):
        return "zip"
    if name.endswith((".tar.gz", ".tgz")):
        return "tar"
    return ""


class ArtifactProvisioner:
    def __init__(self, work_dir: Path, session: Optional[requests.Session] = None,
                 self_check_args: Sequence[str] = ("version",)):
        self.work_dir = Path(work_dir)
        self.session = session or requests.Session()
        self.session.max_redirects = MAX_REDIRECTS
        self.self_check_args = list(self_check_args)

    # public -----------------------------------------------------------
    def ensure_artifact(self, candidates: Sequence[ArtifactCandidate]) -> Path:
        cached = self._cached(candidates)
        if cached is not None:
            return cached

        attempts: List[Tuple[str, str]] = []
        for cand in candidates:
            LOGGER.info("[dl] %s (%s)", cand.source_url, cand.arch_key)
            try:
                self._install(cand)
            except ProvisionError as exc:
                LOGGER.warning("candidate %s failed: %s", cand.source_url, exc)
                attempts.append((cand.source_url, str(exc)))
                self._discard(cand.installed_path)
                continue
            ok, detail = self.self_check(cand.installed_path)
            if ok:
                LOGGER.info("installed %s (%s)", cand.installed_path, detail)
                return cand.installed_path
            LOGGER.warning("candidate %s failed self-check: %s", cand.source_url, detail)
            attempts.append((cand.source_url, f"self-check failed: {detail}"))
            self._discard(cand.installed_path)
        raise NoUsableArtifact(attempts)

    def self_check(self, path: Path) -> Tuple[bool, str]:
        try:
            proc = subprocess.run(
                [str(path), *self.self_check_args],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=SELF_CHECK_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            return False, "timed out"
        except OSError as exc:
            return False, str(exc)
        first = proc.stdout.decode("utf-8", "replace").strip().splitlines()
        summary = first[0] if first else ""
        if proc.returncode != 0:
            return False, f"exit {proc.returncode} {summary}".strip()
        return True, summary

    # internal helpers -------------------------------------------------
    def _cached(self, candidates: Sequence[ArtifactCandidate]) -> Optional[Path]:
        seen: Set[Path] = set()
        for cand in candidates:
            path = cand.installed_path
            if path in seen:
                continue
            seen.add(path)
            if not path.exists():
                continue
            ok, detail = self.self_check(path)
            if ok:
                LOGGER.info("using cached %s (%s)", path, detail)
                return path
            LOGGER.warning("cached %s failed self-check (%s); removing", path, detail)
            self._discard(path)
        return None

    def _discard(self, path: Path) -> None:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()

    def _install(self, cand: ArtifactCandidate) -> None:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        cand.installed_path.parent.mkdir(parents=True, exist_ok=True)
        kind = _archive_kind(cand.source_url)
        fd, archive = tempfile.mkstemp(prefix="download-", suffix=".part", dir=str(self.work_dir))
        os.close(fd)
        scratch = Path(tempfile.mkdtemp(prefix="extract-", dir=str(self.work_dir)))
        try:
            self._download(cand.source_url, Path(archive))
            if kind:
                source = self._extract(Path(archive), kind, cand.member or BINARY_NAME, scratch)
            else:
                source = Path(archive)
            staged = cand.installed_path.with_name(cand.installed_path.name + ".new")
            shutil.move(str(source), str(staged))
            os.chmod(staged, cand.executable_mode)
            os.replace(staged, cand.installed_path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(archive)
            shutil.rmtree(scratch, ignore_errors=True)
            with contextlib.suppress(FileNotFoundError):
                cand.installed_path.with_name(cand.installed_path.name + ".new").unlink()

    def _download(self, url: str, dest: Path) -> None:
        try:
            with self.session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as resp:
                resp.raise_for_status()
                with open(dest, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            fh.write(chunk)
        except requests.TooManyRedirects as exc:
            raise DownloadFailed(f"too many redirects: {url}") from exc
        except requests.RequestException as exc:
            raise DownloadFailed(f"{url}: {exc}") from exc
        except OSError as exc:
            raise DownloadFailed(f"writing {dest}: {exc}") from exc

    def _extract(self, archive: Path, kind: str, member: str, scratch: Path) -> Path:
        try:
            if kind == "zip":
                with zipfile.ZipFile(archive) as zf:
                    names = [n for n in zf.namelist() if Path(n).name == member and not n.endswith("/")]
                    if not names:
                        raise ExtractFailed(f"{member} not found in archive")
                    return Path(zf.extract(names[0], path=str(scratch)))
            with tarfile.open(archive, "r:*") as tf:
                infos = [i for i in tf.getmembers() if i.isfile() and Path(i.name).name == member]
                if not infos:
                    raise ExtractFailed(f"{member} not found in archive")
                src = tf.extractfile(infos[0])
                if src is None:
                    raise ExtractFailed(f"cannot read {member} from archive")
                target = scratch / member
                with src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
                return target
        except (zipfile.BadZipFile, tarfile.TarError, OSError) as exc:
            raise ExtractFailed(f"{archive.name}: {exc}") from exc
