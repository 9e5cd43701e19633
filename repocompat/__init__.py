"""RepoCompat: cross-repository structural diff and compatibility scoring."""

__version__ = "0.3.0"
