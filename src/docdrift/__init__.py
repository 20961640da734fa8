"""docdrift - documentation drift detection.

Maps documentation claims to the code they describe and verifies them through
an escalating ladder of checks, from deterministic lookups to LLM-assisted
review.
"""

__version__ = "0.1.0"
