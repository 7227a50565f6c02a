"""imaputils test suite.

Unit tests live in ``tests/unit`` next to the in-memory IMAP and ManageSieve
servers in ``fakes.py``; ``tests/e2e`` drives the CLI against the same fakes.
"""
