"""
Archive — replace codegen-unit members of a static archive (``.rlib``).

A member is replaced in a three-step transaction on a working copy that
sits next to the archive:

  1. stage:  copy the archive to a uniquely named hidden working file;
  2. insert: add the instrumented object before the original member
             (``llvm-ar rb <member> <work> <ci-object>``);
  3. delete: remove the original member (``llvm-ar d <work> <member>``).

Only when both steps succeed and the member list checks out is the working
copy renamed over the archive.  Until then the archive on disk is the
untouched original, so no failure can leave it without the member.
"""
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from ci_integrate.core.paths import CGU_MARKER, is_instrumented
from ci_integrate.core.process import ToolRunner, check_output
from ci_integrate.errors import ArchiveRewriteError

logger = logging.getLogger(__name__)


def is_replaceable_member(name: str) -> bool:
    """Codegen-unit object that has not been instrumented yet."""
    return CGU_MARKER in name and not is_instrumented(name)


def _work_path(archive: Path) -> Path:
    fd, name = tempfile.mkstemp(prefix=f".{archive.name}.", suffix=".ci-work", dir=archive.parent)
    os.close(fd)
    return Path(name)


class ArchiveTool:
    def __init__(self, runner: ToolRunner, ar: str, log_dir: Optional[Path] = None):
        self.runner = runner
        self.ar = ar
        self.log_dir = log_dir

    def members(self, archive: Path, unit: str) -> List[str]:
        output = check_output(
            self.runner.run([self.ar, "t", str(archive)]),
            expected=None,
            unit=unit,
            stage="archive",
            log_dir=self.log_dir,
        )
        return [line.strip() for line in output.stdout.splitlines() if line.strip()]

    def replace_member(self, archive: Path, member: str, replacement: Path, unit: str) -> None:
        """Swap *member* of *archive* for *replacement*, all or nothing."""
        work = _work_path(archive)
        try:
            shutil.copy2(archive, work)
            check_output(
                self.runner.run([self.ar, "rb", member, str(work), str(replacement)]),
                expected=work,
                unit=unit,
                stage="archive",
            log_dir=self.log_dir,
            )
            check_output(
                self.runner.run([self.ar, "d", str(work), member]),
                expected=work,
                unit=unit,
                stage="archive",
            log_dir=self.log_dir,
            )

            after = self.members(work, unit)
            if replacement.name not in after:
                raise ArchiveRewriteError(archive, member, f"{replacement.name} was not inserted")
            if member in after:
                raise ArchiveRewriteError(archive, member, "original member is still present")

            os.replace(work, archive)
        finally:
            if work.exists():
                work.unlink()

        logger.debug(f"replaced {member} with {replacement.name} in {archive.name}")
