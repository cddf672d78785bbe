"""
gitgraph.py: draw every object of a git repository as a Graphviz graph

Commits, trees, blobs, references and HEAD become boxes in four dotted
clusters; edges are labelled tree, parent, blob and points_to. The DOT file
is written to git_graph.dot unless told otherwise.
"""

import argparse
import collections
import logging
import os
import subprocess
import sys
import tempfile

import graphviz

from gitobjects import DataSourceError, GitCommandSource, LooseObjectSource, MalformedObject

logger = logging.getLogger(__name__)

OUTPUT_FILE = "git_graph.dot"
HEAD = "HEAD"

REF, HEAD_NODE, COMMIT, TREE, BLOB = "ref", "head", "commit", "tree", "blob"

# category -> colour, used for the node fill and for every edge leaving it
COLORS = {
    REF: "burlywood",
    HEAD_NODE: "red",
    COMMIT: "lightblue",
    TREE: "lightgreen",
    BLOB: "purple",
}

CLUSTERS = [
    ("cluster_refs", "References", (HEAD_NODE, REF)),
    ("cluster_commits", "Commits", (COMMIT,)),
    ("cluster_trees", "Trees", (TREE,)),
    ("cluster_blobs", "Blobs", (BLOB,)),
]


def label_text(text):
    """Make a file name safe inside a DOT label: UTF-8 only, backslashes doubled."""
    text = text.encode("utf-8", errors="backslashreplace").decode("utf-8")
    return text.replace("\\", "\\\\")


Node = collections.namedtuple("Node", "id label category")
Edge = collections.namedtuple("Edge", "source target label category")

# ----------------------
# Graph Document
# ----------------------

class GraphDocument:
    def __init__(self):
        self.nodes = {}
        self.edges = []
        self.commit_rank = []
        self.ref_rank = []
        self.dangling = []

    def add_node(self, oid, label, category):
        """Add a node unless one with this id exists. Returns True if added."""
        if oid in self.nodes:
            return False
        self.nodes[oid] = Node(oid, label, category)
        return True

    def add_edge(self, source, target, label):
        self.edges.append(Edge(source, target, label, self.nodes[source].category))

    def nodes_in(self, *categories):
        return [n for n in self.nodes.values() if n.category in categories]

# ----------------------
# Reference tokens
# ----------------------

class RefTokens:
    """Bidirectional mapping between reference names and DOT-friendly tokens.

    A token is the name with '/' replaced by '_'. When two names flatten to
    the same token the later one gets '~2', '~3', ... appended; git forbids
    '~' in reference names, so a suffixed token never equals a plain one.
    """

    def __init__(self, reserved=(HEAD,)):
        self._by_name = {}
        self._by_token = {token: None for token in reserved}

    def token(self, name):
        if name in self._by_name:
            return self._by_name[name]
        base = name.replace("/", "_")
        token, n = base, 1
        while token in self._by_token:
            n += 1
            token = f"{base}~{n}"
        if token != base:
            logger.info("Reference %s collides with %s, using token %s",
                        name, self.name(base) or base, token)
        self._by_name[name] = token
        self._by_token[token] = name
        return token

    def name(self, token):
        return self._by_token[token]

# ----------------------
# Graph Builder
# ----------------------

class GraphBuilder:
    """Turn the current state of a repository data source into a GraphDocument."""

    def __init__(self, source):
        self.source = source

    def build(self):
        self._doc = GraphDocument()
        self._kinds = {}
        self._visited = set()

        oids = self.source.list_all_objects()
        logger.info("Enumerated %d objects", len(oids))
        for oid in oids:
            self._expand(oid)

        tokens = RefTokens()
        self._add_references(tokens)
        self._add_head(tokens)

        for edge in self._doc.edges:
            if edge.target not in self._doc.nodes:
                logger.warning("%s %s points to %s which is not in the graph",
                               edge.category, edge.source, edge.target)
                self._doc.dangling.append(edge)

        doc = self._doc
        logger.info("Built graph with %d nodes and %d edges", len(doc.nodes), len(doc.edges))
        return doc

    def _kind(self, oid):
        if oid not in self._kinds:
            self._kinds[oid] = self.source.type_of(oid)
        return self._kinds[oid]

    def _expand(self, oid):
        stack = [oid]
        while stack:
            oid = stack.pop()
            if oid in self._visited:
                continue
            self._visited.add(oid)
            kind = self._kind(oid)
            if kind == COMMIT:
                stack.extend(reversed(self._add_commit(oid)))
            elif kind == TREE:
                stack.extend(reversed(self._add_tree(oid)))
            elif kind != BLOB:
                logger.debug("Skipping %s object %s", kind, oid)

    def _add_commit(self, oid):
        commit = self.source.read_commit(oid)
        if self._kind(commit.tree) != TREE:
            raise MalformedObject(f"tree {commit.tree} is missing", oid)
        self._doc.add_node(oid, f"Commit: {oid}", COMMIT)
        self._doc.commit_rank.append(oid)
        self._doc.add_edge(oid, commit.tree, "tree")
        follow = [commit.tree]
        for parent in commit.parents:
            self._doc.add_edge(oid, parent, "parent")
            if self._kind(parent) == COMMIT:
                follow.append(parent)
        return follow

    def _add_tree(self, oid):
        self._doc.add_node(oid, f"Tree: {oid}", TREE)
        subtrees = []
        for entry in self.source.read_tree(oid):
            if entry.kind == BLOB:
                self._doc.add_node(entry.id, f"Blob: {entry.id}\\n{label_text(entry.name)}", BLOB)
                self._doc.add_edge(oid, entry.id, "blob")
            elif entry.kind == TREE:
                if self._kind(entry.id) != TREE:
                    raise MalformedObject(f"subtree {entry.name} ({entry.id}) is missing", oid)
                self._doc.add_edge(oid, entry.id, "tree")
                subtrees.append(entry.id)
            else:
                logger.debug("Skipping %s entry %s in tree %s", entry.kind, entry.name, oid)
        return subtrees

    def _add_references(self, tokens):
        self._doc.ref_rank.append(HEAD)
        for ref in self.source.list_references():
            if ref.name == "refs/heads/HEAD":
                continue
            token = tokens.token(ref.name)
            label = ref.name[len("refs/"):] if ref.name.startswith("refs/") else ref.name
            if self._doc.add_node(token, label, REF):
                self._doc.ref_rank.append(token)
                self._doc.add_edge(token, ref.target, "points_to")

    def _add_head(self, tokens):
        head = self.source.head_pointer()
        self._doc.add_node(HEAD, HEAD, HEAD_NODE)
        if head.symbolic:
            self._doc.add_edge(HEAD, tokens.token(head.ref), "points_to")
        else:
            self._doc.add_edge(HEAD, head.target, "points_to")

# ----------------------
# Document Writer
# ----------------------

def to_digraph(doc):
    dot = graphviz.Digraph("git_objects", graph_attr={"rankdir": "LR"})
    has_ref_edges = any(e.label == "points_to" for e in doc.edges)
    for name, label, categories in CLUSTERS:
        with dot.subgraph(name=name) as c:
            c.attr(label=label, style="dotted")
            if name == "cluster_refs" and has_ref_edges:
                with c.subgraph() as s:
                    s.attr(rank="same")
                    for oid in doc.ref_rank:
                        s.node(oid)
            if name == "cluster_commits" and doc.commit_rank:
                with c.subgraph() as s:
                    s.attr(rank="same")
                    for oid in doc.commit_rank:
                        s.node(oid)
            for node in doc.nodes_in(*categories):
                color = COLORS[node.category]
                c.node(node.id, node.label, shape="box", style="filled",
                       fillcolor=color, color=color)
    for edge in doc.edges:
        dot.edge(edge.source, edge.target, label=edge.label, color=COLORS[edge.category])
    return dot


def write_document(doc, path=OUTPUT_FILE, render=None):
    """Save the DOT source to path, optionally rendering it with Graphviz.

    The source goes to a temporary file next to path and is moved into place
    once complete. Returns the rendered file name when render is given.
    """
    dot = to_digraph(doc)
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(prefix=".git_graph.", suffix=".tmp", dir=directory)
    os.close(fd)
    try:
        dot.save(tmp)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    logger.debug("Wrote %s", path)
    if render:
        return graphviz.render("dot", render, path)
    return None

# ----------------------
# Argument Parser
# ----------------------

SOURCES = {
    "git": GitCommandSource,
    "loose": LooseObjectSource,
}


def main(argv=None):
    p = argparse.ArgumentParser(description="Draw the git object graph with Graphviz")
    p.add_argument("-C", dest="repo", default=".", help="repository path (default: current directory)")
    p.add_argument("-o", "--output", default=OUTPUT_FILE, help=f"DOT file to write (default: {OUTPUT_FILE})")
    p.add_argument("--source", choices=sorted(SOURCES), default="git",
                   help="read objects through the git executable or straight from loose object files")
    p.add_argument("--include-unreachable", action="store_true",
                   help="include objects no reference reaches")
    p.add_argument("--render", metavar="FORMAT", help="also render with dot, e.g. png or svg")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    p.add_argument("-q", "--quiet", action="store_true", help="errors only")
    args = p.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.ERROR if args.quiet else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        source = SOURCES[args.source](args.repo, include_unreachable=args.include_unreachable)
        doc = GraphBuilder(source).build()
        rendered = write_document(doc, args.output, render=args.render)
    except DataSourceError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except (OSError, subprocess.CalledProcessError, graphviz.ExecutableNotFound) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    print(f"Graphviz output generated in {args.output}")
    if rendered:
        print(f"Rendered {rendered}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
