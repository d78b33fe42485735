import gzip
import io
import logging
import os
import shutil
import tarfile
import zlib
from pathlib import Path

from cdparser.models import ErrorKind

# Convenience.
logit = logging.getLogger("app")

# Permissions for directories and files that the archive does not specify.
DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


def is_within(root: Path, target: Path) -> bool:
    """Return `True` if `target` is `root` or one of its descendants."""
    root, target = root.resolve(), target.resolve()
    return target == root or root in target.parents


def _extract_member(tar: tarfile.TarFile, member: tarfile.TarInfo, target: Path):
    """Write a single archive `member` to `target`."""
    target.parent.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)

    if member.isdir():
        target.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)
        if member.mode:
            os.chmod(target, member.mode & 0o7777)
        return

    # Copy the file content before we move on to the next archive entry.
    src = tar.extractfile(member)
    assert src is not None
    with target.open("wb") as dst:
        shutil.copyfileobj(src, dst)
    os.chmod(target, (member.mode & 0o7777) or DEFAULT_FILE_MODE)


def extract(tgz: bytes, dest: Path) -> ErrorKind | None:
    """Unpack the gzip compressed tarball `tgz` into `dest`.

    Abort with an error if an entry would end up outside of `dest`. Symlinks,
    hard links and device files are skipped since charts do not need them.

    """
    logit.debug(f"Extracting to {dest}...")
    try:
        dest.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)
        with tarfile.open(fileobj=io.BytesIO(tgz), mode="r|gz") as tar:
            for member in tar:
                target = dest / member.name
                if not is_within(dest, target):
                    logit.error("archive entry escapes destination", {"name": member.name})
                    return ErrorKind.ARCHIVE_CORRUPT

                if not (member.isdir() or member.isfile()):
                    logit.debug(f"Skipping {member.name} (type {member.type!r})")
                    continue

                _extract_member(tar, member, target)
    except (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile) as err:
        logit.error("corrupt chart archive", {"reason": str(err)})
        return ErrorKind.ARCHIVE_CORRUPT
    except OSError as err:
        logit.error("cannot write chart archive", {"reason": str(err)})
        return ErrorKind.FILESYSTEM_FAILURE

    logit.debug("Extraction completed successfully")
    return None
