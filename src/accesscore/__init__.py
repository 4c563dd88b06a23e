"""AccessCore — identity, multi-tenancy and access control.

The layer every request passes through before it touches data: who the
caller is (session or API key), which organization/project it acts in,
and what it may see (folder sharing, row-level security context).
"""

__version__ = "0.1.0"
