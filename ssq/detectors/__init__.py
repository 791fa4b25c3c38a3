# SPDX-License-Identifier: Apache-2.0
"""Secret scanning detectors package."""

__all__ = ["engine", "git_io", "result_schema", "targets"]
