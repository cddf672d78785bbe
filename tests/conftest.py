"""
Shared fixtures: an in-memory repository data source.

FakeSource answers the same six questions as the real sources. Objects are
named in tests ("C1", "T1", ...) and stored under the sha1 of that name.
"""

import collections
import hashlib

import pytest

from gitobjects import CommitRecord, HeadPointer, MalformedObject, Reference, TreeEntry


def sha(name):
    return hashlib.sha1(name.encode()).hexdigest()


class FakeSource:
    def __init__(self):
        self.kinds = {}
        self.commits = {}
        self.trees = {}
        self.order = []
        self.refs = []
        self.head = None
        self.calls = collections.Counter()

    def _store(self, name, kind, listed):
        oid = sha(name)
        self.kinds[oid] = kind
        if listed:
            self.order.append(oid)
        return oid

    def blob(self, name, listed=True):
        return self._store(name, "blob", listed)

    def tree(self, name, entries, listed=True):
        """entries: (kind, oid, name) triples."""
        oid = self._store(name, "tree", listed)
        modes = {"blob": "100644", "tree": "40000", "commit": "160000"}
        self.trees[oid] = [TreeEntry(modes[k], k, i, n) for k, i, n in entries]
        return oid

    def commit(self, name, tree, parents=(), listed=True):
        oid = self._store(name, "commit", listed)
        self.commits[oid] = CommitRecord(oid, tree, tuple(parents))
        return oid

    def tag(self, name, listed=True):
        return self._store(name, "tag", listed)

    def ref(self, name, target):
        self.refs.append(Reference(name, target))

    def symbolic_head(self, name):
        self.head = HeadPointer.to_ref(name)

    def detached_head(self, target):
        self.head = HeadPointer.detached(target)

    # data source protocol

    def list_all_objects(self):
        return list(self.order)

    def type_of(self, oid):
        self.calls["type_of", oid] += 1
        return self.kinds.get(oid)

    def read_commit(self, oid):
        if oid not in self.commits:
            raise MalformedObject("not a commit", oid)
        return self.commits[oid]

    def read_tree(self, oid):
        if oid not in self.trees:
            raise MalformedObject("not a tree", oid)
        return list(self.trees[oid])

    def list_references(self):
        return list(self.refs)

    def head_pointer(self):
        return self.head


@pytest.fixture
def repo():
    return FakeSource()


@pytest.fixture
def scenario_a(repo):
    """One root commit on main, HEAD -> main."""
    b1 = repo.blob("B1")
    t1 = repo.tree("T1", [("blob", b1, "README")])
    c1 = repo.commit("C1", t1)
    repo.ref("refs/heads/main", c1)
    repo.symbolic_head("refs/heads/main")
    return repo


def edge_set(doc):
    return {(e.source, e.target, e.label) for e in doc.edges}


@pytest.fixture
def edges():
    return edge_set
