"""Bidirectional iteration and range seeks over a B+tree."""

from __future__ import annotations

from enum import IntEnum
from typing import List, Optional, Tuple

from pagedb.btree import BNode, BTree, node_lookup_le


class Cmp(IntEnum):
    """Comparison relations for range seeks.

    Positive values seek forward, negative values seek backward.
    """

    GE = 3  # >=
    GT = 2  # >
    LT = -2  # <
    LE = -3  # <=


def cmp_ok(key: bytes, cmp: int, ref: bytes) -> bool:
    """Whether ``key <cmp> ref`` holds."""
    key = bytes(key or b"")
    ref = bytes(ref or b"")
    if cmp == Cmp.GE:
        return key >= ref
    if cmp == Cmp.GT:
        return key > ref
    if cmp == Cmp.LT:
        return key < ref
    if cmp == Cmp.LE:
        return key <= ref
    raise ValueError(f"bad comparison: {cmp}")


class BIter:
    """A cursor into a B+tree, holding the path from the root to a leaf."""

    def __init__(self, tree: BTree):
        self.tree = tree
        self.path: List[BNode] = []  # from root to leaf
        self.pos: List[int] = []  # indexes into the nodes of `path`

    def _kid(self, level: int) -> BNode:
        node = self.path[level]
        return BNode(self.tree.read_page(node.get_ptr(self.pos[level])))

    def is_first(self) -> bool:
        """True when positioned on the sentinel key before the first key."""
        return all(p == 0 for p in self.pos)

    def is_end(self) -> bool:
        """True when positioned past the last key."""
        return not self.path or self.pos[-1] >= self.path[-1].nkeys()

    def valid(self) -> bool:
        """True when positioned on a real key."""
        return not (self.is_first() or self.is_end())

    def deref(self) -> Tuple[bytes, bytes]:
        """The current key and value."""
        if not self.valid():
            raise IndexError("iterator is not positioned on a key")
        node, pos = self.path[-1], self.pos[-1]
        return node.get_key(pos), node.get_val(pos)

    def _prev(self, level: int) -> None:
        if self.pos[level] > 0:
            self.pos[level] -= 1
        elif level > 0:
            self._prev(level - 1)
        else:
            raise RuntimeError("cannot move before the sentinel key")
        if level + 1 < len(self.pos):
            kid = self._kid(level)
            self.path[level + 1] = kid
            self.pos[level + 1] = kid.nkeys() - 1

    def _next(self, level: int) -> bool:
        """Advance at `level`; False once the cursor moved past the end."""
        if self.pos[level] + 1 < self.path[level].nkeys():
            self.pos[level] += 1
        elif level > 0:
            if not self._next(level - 1):
                return False
        else:
            self.pos[-1] = self.path[-1].nkeys()
            return False
        if level + 1 < len(self.pos):
            self.path[level + 1] = self._kid(level)
            self.pos[level + 1] = 0
        return True

    def prev(self) -> None:
        """Move to the previous key; stays put on the sentinel."""
        if not self.is_first():
            self._prev(len(self.path) - 1)

    def next(self) -> None:
        """Move to the next key; stays put past the end."""
        if not self.is_end():
            self._next(len(self.path) - 1)


def seek_le(tree: BTree, key: Optional[bytes]) -> BIter:
    """Position at the last key less than or equal to `key`."""
    key = bytes(key or b"")
    it = BIter(tree)
    ptr = tree.root
    while ptr:
        node = BNode(tree.read_page(ptr))
        idx = node_lookup_le(node, key)
        it.path.append(node)
        it.pos.append(idx)
        ptr = node.get_ptr(idx)
    return it


def seek(tree: BTree, key: Optional[bytes], cmp: int) -> BIter:
    """Position at the key closest to `key` that satisfies `cmp`."""
    key = bytes(key or b"")
    it = seek_le(tree, key)
    if not (it.is_first() or not it.is_end()):
        raise RuntimeError("inconsistent tree")
    if cmp != Cmp.LE:
        cur = b"" if it.is_first() else it.deref()[0]
        if not key or not cmp_ok(cur, cmp, key):
            # off by one
            if cmp > 0:
                it.next()
            else:
                it.prev()
    if it.valid() and not cmp_ok(it.deref()[0], cmp, key):
        raise RuntimeError("inconsistent tree")
    return it