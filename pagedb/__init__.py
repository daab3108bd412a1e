"""Copy-on-write B+tree over fixed-size pages, with cursors, a page free list and key encoding."""

__version__ = "0.1.0"
__all__ = ["btree", "btree_iter", "free_list", "encoding"]