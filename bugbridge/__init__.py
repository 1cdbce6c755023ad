"""Bidirectional bridge between a local operation-log bug store and GitLab issues"""

__version__ = "0.1.0"
