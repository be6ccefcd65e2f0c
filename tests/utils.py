import os
from pathlib import Path


def write_file(path: Path, content: bytes) -> Path:
    """Writes `content` to `path`, creating parent directories as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def same_inode(path_a: Path, path_b: Path) -> bool:
    return os.path.samefile(path_a, path_b)


def faked_lstat(real_lstat, path: Path, device_offset: int = 0, inode_offset: int = 0):
    """
    Returns an `os.lstat` replacement that reports `path` with a shifted
    device and inode number. Every other path is stat'ed normally.
    """
    def lstat(target, *args, **kwargs):
        st = real_lstat(target, *args, **kwargs)
        if Path(target) != path:
            return st
        fields = list(st[:10])
        fields[1] += inode_offset
        fields[2] += device_offset
        return os.stat_result(fields)
    return lstat
