"""
Dep-Bumper: dependency update engine.

Resolves the next permissible version of a dependency, rewrites manifest
declarations in place and regenerates lockfiles with each ecosystem's
native tooling.
"""

__version__ = "1.0.0"
