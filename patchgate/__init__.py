"""Patchgate - guarded patch application for automated code proposals.

Applies machine-generated patches inside disposable workspaces, runs preflight
gates there, and only commits to a real branch once the critical gates pass.
"""

__version__ = "0.1.0"
