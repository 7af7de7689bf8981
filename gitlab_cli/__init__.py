"""gitlab-cli -- a small GitLab client with unattended auto-merge."""

__version__ = "0.3.0"
