"""
PalletDesk shared store test suite.

This package contains:
- unit/: Unit tests (temporary directories, manual clock)
- integration/: Workspace and CLI tests against a temporary shared folder
"""
