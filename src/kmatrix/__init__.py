"""
kmatrix: kernel module and exploit test matrix

Builds an artifact for each selected kernel, boots the kernel in a
disposable VM, runs the artifact's test and records the verdict:
- Kernel catalogs with rootfs fallback resolution
- Bounded parallel runs under a global deadline
- Append-only SQLite result history
- Reliability gate for the invoking process
"""

__version__ = "0.1.0"
