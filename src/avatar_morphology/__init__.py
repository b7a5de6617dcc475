"""
avatar-morphology: resolve body-scan output into a validated avatar morphology.

Scan archetypes, semantic estimates and an optional refinement service are reduced
to one allow-listed, range-enforced parameter set per request, then fanned out to
skeleton bone scales and a batched morph-target stream.

Importing the package has no side effects: no config loading, no logging setup.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
