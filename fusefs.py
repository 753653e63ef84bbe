"""Read-only FUSE filesystem built on fusepy."""

import errno
import logging
import os
import stat
import time

import fuse
from fuse import FuseOSError

from backend import Backend, BackendError, NotFoundError, parse_path

logger = logging.getLogger(__name__)

WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC
NAME_MAX = 255


class KubeFS(fuse.LoggingMixIn, fuse.Operations):
    """FUSE operations for a read-only backend.

    Any backend error other than NotFoundError is fatal: the filesystem
    keeps it as fatal_error, asks FUSE to unmount, and answers with EIO.
    """

    def __init__(self, backend: Backend):
        self.backend = backend
        self.fatal_error: BackendError | None = None
        self._mounted_at = time.time()
        self._uid = os.getuid()
        self._gid = os.getgid()

    def _abort(self, error: BackendError):
        if self.fatal_error is None:
            self.fatal_error = error
            logger.error("Unmounting after fatal error: %s", error)
            fuse.fuse_exit()

    def _try(self, fn):
        """Call fn(), translating backend errors into FUSE errors."""
        try:
            return fn()
        except NotFoundError:
            raise FuseOSError(errno.ENOENT)
        except BackendError as e:
            self._abort(e)
            raise FuseOSError(errno.EIO)

    def getattr(self, path, fh=None):
        info = self._try(lambda: self.backend.info(parse_path(path)))
        attrs = {
            "st_ino": info.inode,
            "st_uid": self._uid,
            "st_gid": self._gid,
            "st_atime": self._mounted_at,
            "st_mtime": self._mounted_at,
            "st_ctime": self._mounted_at,
        }
        if info.is_dir:
            attrs.update(st_mode=stat.S_IFDIR | info.mode, st_nlink=2, st_size=0)
        else:
            attrs.update(st_mode=stat.S_IFREG | info.mode, st_nlink=1, st_size=info.size)
        return attrs

    def readdir(self, path, fh):
        children = self._try(lambda: self.backend.list(parse_path(path)))
        return [".", ".."] + children

    def open(self, path, flags):
        if flags & WRITE_FLAGS:
            raise FuseOSError(errno.EROFS)
        info = self._try(lambda: self.backend.info(parse_path(path)))
        if info.is_dir:
            raise FuseOSError(errno.EISDIR)
        return 0

    def read(self, path, size, offset, fh):
        return self._try(lambda: self.backend.read(parse_path(path), size, offset))

    def access(self, path, amode):
        if amode & os.W_OK:
            raise FuseOSError(errno.EROFS)
        info = self._try(lambda: self.backend.info(parse_path(path)))
        if amode & os.X_OK and not info.mode & 0o111:
            raise FuseOSError(errno.EACCES)
        return 0

    def statfs(self, path):
        return {
            "f_bsize": 4096,
            "f_frsize": 4096,
            "f_blocks": 0,
            "f_bfree": 0,
            "f_bavail": 0,
            "f_files": 0,
            "f_ffree": 0,
            "f_favail": 0,
            "f_flag": os.ST_RDONLY,
            "f_namemax": NAME_MAX,
        }

    def _read_only(self):
        raise FuseOSError(errno.EROFS)

    chmod = lambda self, *args: self._read_only()
    chown = lambda self, *args: self._read_only()
    create = lambda self, *args: self._read_only()
    link = lambda self, *args: self._read_only()
    mkdir = lambda self, *args: self._read_only()
    mknod = lambda self, *args: self._read_only()
    rename = lambda self, *args: self._read_only()
    rmdir = lambda self, *args: self._read_only()
    symlink = lambda self, *args: self._read_only()
    truncate = lambda self, *args: self._read_only()
    unlink = lambda self, *args: self._read_only()
    utimens = lambda self, *args: self._read_only()
    write = lambda self, *args: self._read_only()
    setxattr = lambda self, *args: self._read_only()
    removexattr = lambda self, *args: self._read_only()


def mount(backend: Backend, mountpoint: str, debug: bool = False, allow_other: bool = False):
    """Mount backend at mountpoint and block until it is unmounted.

    The root listing is done before mounting, so connection and namespace
    listing failures abort before anything is exposed.
    """
    backend.list([])
    operations = KubeFS(backend)
    logger.info("Mounting at %s", mountpoint)
    options = {"ro": True, "use_ino": True, "fsname": "k8sfs"}
    if allow_other:
        options["allow_other"] = True
    fuse.FUSE(operations, mountpoint, foreground=True, debug=debug, **options)
    if operations.fatal_error is not None:
        raise operations.fatal_error
