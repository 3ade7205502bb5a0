"""
ThreadVault: Forum Thread Archiver

Archives a single Discourse discussion thread (posts, author metadata and
embedded media) into a self-contained local bundle for offline viewing, and
re-synchronizes an existing bundle on later runs.
"""

__version__ = "1.0.0"
__author__ = "ThreadVault Project"
__description__ = "Forum Thread Archiver"
