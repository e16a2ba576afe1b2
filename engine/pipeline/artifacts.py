"""
Artifact selection, archival and upload.
"""
import re
import shutil
from pathlib import Path
from typing import List, Optional

import aiohttp

from .credentials import Credential
from .exceptions import ArtifactNotFound, PublishFailure
from .types import ArtifactReference
from utils.logger import get_logger

logger = get_logger(__name__)

# Naming conventions of snapshot / pre-release builds
SNAPSHOT_MARKERS = re.compile(r"(snapshot|[-.](?:rc|alpha|beta|dev))(?=[-.\d]|$)", re.IGNORECASE)


def find_matches(pattern: str, root: str = ".") -> List[Path]:
    """Files under ``root`` matching a glob pattern, sorted by path."""
    base = Path(root)
    pattern_path = Path(pattern)
    if pattern_path.is_absolute():
        base = Path(pattern_path.anchor)
        pattern = str(pattern_path.relative_to(base))
    return sorted(p for p in base.glob(pattern) if p.is_file())


def is_snapshot(path: Path) -> bool:
    return bool(SNAPSHOT_MARKERS.search(path.name))


def select_artifact(pattern: str, root: str = ".") -> Path:
    """
    Pick exactly one file for a pattern

    Precedence when several files match: a snapshot/pre-release file first,
    otherwise the lexicographically first candidate.

    Raises:
        ArtifactNotFound: nothing matched
    """
    matches = find_matches(pattern, root)
    if not matches:
        raise ArtifactNotFound(pattern, root)
    if len(matches) == 1:
        return matches[0]

    snapshots = [m for m in matches if is_snapshot(m)]
    chosen = snapshots[0] if snapshots else matches[0]
    logger.info(f"{len(matches)} files match '{pattern}', selected {chosen.name}")
    return chosen


class ArtifactPublisher:
    """Uploads build artifacts to a raw (Nexus-style) repository"""

    def __init__(self, workdir: str = ".", request_timeout: float = 300.0):
        self.workdir = workdir
        self.request_timeout = request_timeout

    @staticmethod
    def upload_url(base_url: str, repo_path: str, project_name: str,
                   run_number: int, filename: str) -> str:
        parts = [base_url.rstrip("/"), repo_path.strip("/"), project_name.strip("/"),
                 str(run_number), filename]
        return "/".join(part for part in parts if part)

    async def publish(self, pattern: str, destination: str,
                      credential: Optional[Credential]) -> ArtifactReference:
        """
        Upload the artifact selected by ``pattern``

        Args:
            pattern: glob relative to the publisher workdir
            destination: directory URL; the file name is appended
            credential: basic-auth credential for the repository

        Returns:
            ArtifactReference whose label is the uploaded URL

        Raises:
            ArtifactNotFound: nothing matched ``pattern``
            PublishFailure: network, authentication or HTTP error; not retried
        """
        artifact = select_artifact(pattern, self.workdir)
        url = f"{destination.rstrip('/')}/{artifact.name}"

        auth = None
        if credential is not None:
            auth = aiohttp.BasicAuth(credential.username or "", credential.secret)

        logger.info(f"Uploading {artifact} to {url}")
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout, auth=auth) as session:
                with open(artifact, "rb") as payload:
                    async with session.put(url, data=payload) as response:
                        if response.status >= 400:
                            body = await response.text()
                            raise PublishFailure(url, f"HTTP {response.status} {body[:200]}".strip(),
                                                 status=response.status)
        except PublishFailure:
            raise
        except (aiohttp.ClientError, OSError) as e:
            raise PublishFailure(url, str(e) or e.__class__.__name__) from e

        logger.info(f"Published {artifact.name}")
        return ArtifactReference(path=str(artifact), label=url)


class ReportArchiver:
    """Copies report files into the run's artifact directory"""

    def __init__(self, workdir: str, archive_dir: str):
        self.workdir = Path(workdir)
        self.archive_dir = Path(archive_dir)

    def archive(self, pattern: str, label: Optional[str] = None,
                allow_empty: bool = True) -> List[ArtifactReference]:
        matches = find_matches(pattern, str(self.workdir))
        if not matches:
            if allow_empty:
                logger.info(f"No files to archive for '{pattern}'")
                return []
            raise ArtifactNotFound(pattern, str(self.workdir))

        references = []
        for match in matches:
            try:
                relative = match.resolve().relative_to(self.workdir.resolve())
            except ValueError:
                relative = Path(match.name)
            target = self.archive_dir / relative
            if target.exists():
                # Write-once per run: a report already archived is kept
                logger.debug(f"{relative} already archived")
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(match, target)
            references.append(ArtifactReference(path=str(target), label=label or str(relative)))

        logger.info(f"Archived {len(references)} file(s) for '{pattern}'")
        return references
