"""A persistent FIFO of free page numbers stored as a linked list of pages.

List node layout::

    | next | pointers | unused |
    |  8B  |   n*8B   |   ...  |
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from pagedb.btree import BTREE_PAGE_SIZE, Buffer

FREE_LIST_HEADER = 8
FREE_LIST_CAP = (BTREE_PAGE_SIZE - FREE_LIST_HEADER) // 8

_U64 = struct.Struct("<Q")


def seq2idx(seq: int) -> int:
    """Slot of a sequence number within its list node."""
    return seq % FREE_LIST_CAP


class LNode:
    """A view of one free-list node stored in a byte buffer."""

    __slots__ = ("data",)

    def __init__(self, data: Buffer):
        self.data = data

    def get_next(self) -> int:
        return _U64.unpack_from(self.data, 0)[0]

    def set_next(self, nxt: int) -> None:
        _U64.pack_into(self.data, 0, nxt)

    def get_ptr(self, idx: int) -> int:
        if not 0 <= idx < FREE_LIST_CAP:
            raise IndexError(f"free list slot out of range: {idx}")
        return _U64.unpack_from(self.data, FREE_LIST_HEADER + 8 * idx)[0]

    def set_ptr(self, idx: int, ptr: int) -> None:
        if not 0 <= idx < FREE_LIST_CAP:
            raise IndexError(f"free list slot out of range: {idx}")
        _U64.pack_into(self.data, FREE_LIST_HEADER + 8 * idx, ptr)


@dataclass
class FreeList:
    """Free pages, consumed from the head and added at the tail."""

    read_page: Callable[[int], Buffer]  # read a page
    append_page: Callable[[Buffer], int]  # append a new page
    write_page: Callable[[int], Buffer]  # get a writable copy of a page
    head_page: int = 0
    head_seq: int = 0
    tail_page: int = 0
    tail_seq: int = 0
    # items at or after this sequence number are not yet consumable
    max_seq: int = 0

    def check(self) -> None:
        """Raise if the list pointers are inconsistent."""
        if self.head_page == 0 or self.tail_page == 0:
            raise RuntimeError("free list has no node")
        if self.head_seq == self.tail_seq and self.head_page != self.tail_page:
            raise RuntimeError("empty free list spans several nodes")

    def _pop(self) -> Tuple[Optional[int], Optional[int]]:
        """Remove one item; also return the head node if it became empty."""
        self.check()
        if self.head_seq == self.max_seq:
            return None, None
        node = LNode(self.read_page(self.head_page))
        ptr = node.get_ptr(seq2idx(self.head_seq))
        self.head_seq += 1
        head = None
        if seq2idx(self.head_seq) == 0:
            head, self.head_page = self.head_page, node.get_next()
            if self.head_page == 0:
                raise RuntimeError("free list is missing its next node")
        return ptr, head

    def pop_head(self) -> Optional[int]:
        """Take one free page, or None if none is available."""
        ptr, head = self._pop()
        if head is not None:
            # the emptied head node is recycled
            self.push_tail(head)
        return ptr

    def push_tail(self, ptr: int) -> None:
        """Add a free page at the tail."""
        self.check()
        LNode(self.write_page(self.tail_page)).set_ptr(seq2idx(self.tail_seq), ptr)
        self.tail_seq += 1
        if seq2idx(self.tail_seq) != 0:
            return
        # the tail node is full: reuse a page from the head or append one
        nxt, head = self._pop()
        if nxt is None:
            nxt = self.append_page(bytearray(BTREE_PAGE_SIZE))
        LNode(self.write_page(self.tail_page)).set_next(nxt)
        self.tail_page = nxt
        if head is not None:
            LNode(self.write_page(self.tail_page)).set_ptr(0, head)
            self.tail_seq += 1

    def set_max_seq(self) -> None:
        """Make items added so far available for consumption."""
        self.max_seq = self.tail_seq