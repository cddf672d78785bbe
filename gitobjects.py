"""
gitobjects.py: read-only access to a git object store

Every graph build asks a repository data source the same six questions:

- list_all_objects(): every object id reachable from any reference
- type_of(id): 'commit', 'tree', 'blob', 'tag' or None for an unknown id
- read_commit(id): CommitRecord (tree and ordered parents)
- read_tree(id): list of TreeEntry
- list_references(): list of Reference (full name, target id)
- head_pointer(): HeadPointer, symbolic (ref set) or detached (target only)

Two sources answer them:

- GitCommandSource: asks the `git` executable (works with packs, the default).
- LooseObjectSource: reads .git/objects, refs, packed-refs and HEAD directly.
  Loose objects only; packed objects are invisible to it.

Both can be told to enumerate every stored object instead of the reference
closure (include_unreachable=True), which is how dangling objects get in.
"""

import collections
import logging
import os
import re
import subprocess
import zlib

logger = logging.getLogger(__name__)

GIT = "git"

# ----------------------
# Data Structures
# ----------------------

CommitRecord = collections.namedtuple("CommitRecord", "id tree parents")
TreeEntry = collections.namedtuple("TreeEntry", "mode kind id name")
Reference = collections.namedtuple("Reference", "name target")


class HeadPointer(collections.namedtuple("HeadPointer", "ref target")):
    """HEAD either names a reference (symbolic) or an object id (detached)."""

    __slots__ = ()

    @property
    def symbolic(self):
        return self.ref is not None

    @classmethod
    def to_ref(cls, name, target=None):
        return cls(name, target)

    @classmethod
    def detached(cls, target):
        return cls(None, target)


HEX_ID = re.compile(r"^[0-9a-f]{40}([0-9a-f]{24})?$")

# ----------------------
# Errors
# ----------------------

class DataSourceError(Exception):
    """Base class for everything a repository data source can fail with."""

    kind = "DataSourceError"

    def __init__(self, message, object_id=None):
        super().__init__(message)
        self.object_id = object_id

    def __str__(self):
        message = super().__str__()
        if self.object_id:
            return f"{self.kind} {self.object_id}: {message}"
        return f"{self.kind}: {message}"


class DataSourceUnavailable(DataSourceError):
    """The repository cannot be queried at all."""

    kind = "DataSourceUnavailable"


class MalformedObject(DataSourceError):
    """An object cannot be read as the record it is supposed to be."""

    kind = "MalformedObject"

# ----------------------
# Parsers
# ----------------------

def parse_commit(oid, data):
    """Parse a raw commit body into a CommitRecord.

    Header lines run until the first blank line. Exactly one `tree` line is
    required; `parent` lines are kept in the order they appear.
    """
    try:
        text = data.decode("utf-8", errors="replace")
    except AttributeError:
        text = data
    tree = None
    parents = []
    for line in text.splitlines():
        if line == "":
            break
        if line.startswith("tree "):
            if tree is not None:
                raise MalformedObject("commit has more than one tree", oid)
            tree = line[5:].strip()
        elif line.startswith("parent "):
            parents.append(line[7:].strip())
    if not tree:
        raise MalformedObject("commit has no tree", oid)
    for ref in [tree] + parents:
        if not HEX_ID.match(ref):
            raise MalformedObject(f"commit names an invalid object id {ref!r}", oid)
    return CommitRecord(oid, tree, tuple(parents))


def entry_kind(mode):
    if mode in ("40000", "040000"):
        return "tree"
    if mode == "160000":
        # submodule gitlink
        return "commit"
    return "blob"


def parse_tree(oid, data):
    """Parse a binary tree body: `<mode> <name>\\0<raw id>` repeated.

    The raw id width follows the width of the tree's own id, so SHA-256
    repositories parse the same way.
    """
    width = len(oid) // 2
    entries = []
    i = 0
    while i < len(data):
        j = data.find(b"\x00", i)
        if j < 0 or j + 1 + width > len(data):
            raise MalformedObject("truncated tree entry", oid)
        try:
            mode, name = data[i:j].decode("utf-8", errors="backslashreplace").split(" ", 1)
        except ValueError:
            raise MalformedObject("tree entry without a mode", oid) from None
        sha = data[j + 1:j + 1 + width].hex()
        entries.append(TreeEntry(mode, entry_kind(mode), sha, name))
        i = j + 1 + width
    return entries


def parse_tag_target(oid, data):
    for line in data.decode("utf-8", errors="replace").splitlines():
        if line == "":
            break
        if line.startswith("object "):
            return line[7:].strip()
    raise MalformedObject("tag has no object", oid)

# ----------------------
# git executable
# ----------------------

class GitCommandSource:
    """Repository data source backed by the `git` executable."""

    def __init__(self, path=".", include_unreachable=False, git=GIT):
        self.path = os.path.abspath(path)
        self.include_unreachable = include_unreachable
        self.git = git
        self._kinds = {}
        self._run("rev-parse", "--git-dir")

    def _run(self, *args, input=None, ok=(0,)):
        cmd = [self.git, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.path,
                input=input,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise DataSourceUnavailable(f"cannot run {self.git}: {e}") from e
        if result.returncode not in ok:
            err = result.stderr.decode("utf-8", errors="replace").strip()
            raise DataSourceUnavailable(f"{' '.join(cmd)} failed: {err}")
        logger.debug("%s -> %d", " ".join(cmd), result.returncode)
        return result

    def _batch_check(self, *args, input=None):
        out = self._run(
            "cat-file", "--batch-check=%(objectname) %(objecttype)", *args, input=input
        ).stdout.decode()
        oids = []
        for line in out.splitlines():
            parts = line.split()
            if len(parts) != 2:
                continue
            oid, kind = parts
            if kind == "missing":
                continue
            self._kinds[oid] = kind
            oids.append(oid)
        return oids

    def list_all_objects(self):
        if self.include_unreachable:
            return self._batch_check("--batch-all-objects")
        out = self._run("rev-list", "--all", "--objects").stdout
        oids = [line.split(b" ", 1)[0] for line in out.splitlines() if line]
        if not oids:
            return []
        return self._batch_check(input=b"\n".join(oids) + b"\n")

    def type_of(self, oid):
        if oid not in self._kinds:
            result = self._run("cat-file", "-t", oid, ok=(0, 1, 128))
            if result.returncode != 0:
                return None
            self._kinds[oid] = result.stdout.decode().strip()
        return self._kinds[oid]

    def _read(self, kind, oid):
        result = self._run("cat-file", kind, oid, ok=(0, 1, 128))
        if result.returncode != 0:
            raise MalformedObject(f"cannot read as {kind}", oid)
        return result.stdout

    def read_commit(self, oid):
        return parse_commit(oid, self._read("commit", oid))

    def read_tree(self, oid):
        return parse_tree(oid, self._read("tree", oid))

    def list_references(self):
        # show-ref exits 1 when the repository has no references
        out = self._run("show-ref", ok=(0, 1)).stdout.decode()
        refs = []
        for line in out.splitlines():
            target, _, name = line.partition(" ")
            if name:
                refs.append(Reference(name, target))
        return refs

    def head_pointer(self):
        result = self._run("symbolic-ref", "-q", "HEAD", ok=(0, 1))
        if result.returncode == 0:
            name = result.stdout.decode().strip()
            target = self._run("rev-parse", "-q", "--verify", name, ok=(0, 1)).stdout
            return HeadPointer.to_ref(name, target.decode().strip() or None)
        target = self._run("rev-parse", "-q", "--verify", "HEAD").stdout.decode().strip()
        return HeadPointer.detached(target)

# ----------------------
# Loose object store
# ----------------------

def find_gitdir(path):
    """Locate the git directory for a worktree, a .git file, or a bare repo."""
    path = os.path.abspath(path)
    dotgit = os.path.join(path, ".git")
    if os.path.isfile(dotgit):
        with open(dotgit) as f:
            content = f.read().strip()
        if not content.startswith("gitdir:"):
            raise DataSourceUnavailable(f"{dotgit} is not a gitdir file")
        return os.path.normpath(os.path.join(path, content[7:].strip()))
    if os.path.isdir(dotgit):
        return dotgit
    if os.path.isfile(os.path.join(path, "HEAD")) and os.path.isdir(os.path.join(path, "objects")):
        return path
    raise DataSourceUnavailable(f"not a git repository: {path}")


class LooseObjectSource:
    """Repository data source reading loose objects straight from disk."""

    def __init__(self, path=".", include_unreachable=False):
        self.gitdir = find_gitdir(path)
        self.objects_dir = os.path.join(self.gitdir, "objects")
        self.include_unreachable = include_unreachable
        if not os.path.isfile(os.path.join(self.gitdir, "HEAD")):
            raise DataSourceUnavailable(f"no HEAD in {self.gitdir}")
        pack_dir = os.path.join(self.objects_dir, "pack")
        if os.path.isdir(pack_dir) and any(f.endswith(".pack") for f in os.listdir(pack_dir)):
            logger.warning(
                "%s has packed objects which this source cannot read; use the git source",
                self.gitdir,
            )

    def _object_path(self, oid):
        return os.path.join(self.objects_dir, oid[:2], oid[2:])

    def object_read(self, oid):
        """Return (kind, body) of a loose object, or None if it is not stored."""
        obj_path = self._object_path(oid)
        if not os.path.exists(obj_path):
            return None
        try:
            with open(obj_path, "rb") as f:
                full = zlib.decompress(f.read())
        except (OSError, zlib.error) as e:
            raise MalformedObject(f"unreadable object file: {e}", oid) from e
        x = full.find(b" ")
        y = full.find(b"\x00", x)
        if x < 0 or y < 0:
            raise MalformedObject("object has no header", oid)
        fmt = full[:x].decode("ascii", errors="replace")
        try:
            size = int(full[x + 1:y])
        except ValueError:
            raise MalformedObject("object header has no size", oid) from None
        data = full[y + 1:]
        if size != len(data):
            raise MalformedObject(f"object size {len(data)} does not match header {size}", oid)
        return fmt, data

    def _read(self, kind, oid):
        obj = self.object_read(oid)
        if obj is None:
            raise MalformedObject("object not found", oid)
        fmt, data = obj
        if fmt != kind:
            raise MalformedObject(f"expected {kind}, found {fmt}", oid)
        return data

    def type_of(self, oid):
        obj = self.object_read(oid)
        return obj[0] if obj else None

    def read_commit(self, oid):
        return parse_commit(oid, self._read("commit", oid))

    def read_tree(self, oid):
        return parse_tree(oid, self._read("tree", oid))

    # refs

    def _read_text(self, path):
        with open(path) as f:
            return f.read().strip()

    def _packed_refs(self):
        refs = {}
        packed = os.path.join(self.gitdir, "packed-refs")
        if not os.path.isfile(packed):
            return refs
        with open(packed) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or line.startswith("^"):
                    continue
                parts = line.split(None, 1)
                if len(parts) == 2 and HEX_ID.match(parts[0]):
                    refs[parts[1]] = parts[0]
        return refs

    def _resolve(self, value, packed, depth=0):
        if HEX_ID.match(value):
            return value
        if value.startswith("ref: ") and depth < 5:
            name = value[5:].strip()
            path = os.path.join(self.gitdir, name)
            if os.path.isfile(path):
                return self._resolve(self._read_text(path), packed, depth + 1)
            return packed.get(name)
        return None

    def list_references(self):
        packed = self._packed_refs()
        refs = dict(packed)
        refs_base = os.path.join(self.gitdir, "refs")
        for root, dirs, files in os.walk(refs_base):
            dirs.sort()
            for f in files:
                full_path = os.path.join(root, f)
                name = os.path.relpath(full_path, self.gitdir).replace(os.sep, "/")
                target = self._resolve(self._read_text(full_path), packed)
                if target:
                    refs[name] = target
                else:
                    logger.debug("Skipping unresolvable ref %s", name)
        return [Reference(name, refs[name]) for name in sorted(refs)]

    def head_pointer(self):
        head = self._read_text(os.path.join(self.gitdir, "HEAD"))
        if head.startswith("ref: "):
            return HeadPointer.to_ref(head[5:].strip(), self._resolve(head, self._packed_refs()))
        if HEX_ID.match(head):
            return HeadPointer.detached(head)
        raise DataSourceUnavailable(f"cannot parse HEAD: {head!r}")

    # enumeration

    def _all_stored(self):
        oids = []
        for d in sorted(os.listdir(self.objects_dir)):
            if len(d) != 2:
                continue
            for f in sorted(os.listdir(os.path.join(self.objects_dir, d))):
                oids.append(d + f)
        return oids

    def list_all_objects(self):
        if self.include_unreachable:
            return self._all_stored()
        starts = [ref.target for ref in self.list_references()]
        head = self.head_pointer()
        if head.target:
            starts.append(head.target)
        seen = set()
        order = []
        stack = list(reversed(starts))
        while stack:
            oid = stack.pop()
            if oid in seen:
                continue
            seen.add(oid)
            obj = self.object_read(oid)
            if obj is None:
                logger.debug("Object %s is not stored loose", oid)
                continue
            order.append(oid)
            fmt, data = obj
            if fmt == "commit":
                commit = parse_commit(oid, data)
                stack.extend(reversed((commit.tree,) + commit.parents))
            elif fmt == "tree":
                stack.extend(
                    e.id for e in reversed(parse_tree(oid, data)) if e.kind != "commit"
                )
            elif fmt == "tag":
                stack.append(parse_tag_target(oid, data))
        return order
