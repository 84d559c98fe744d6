"""
fibereval: Tractogram Plausibility Scoring

Fits streamline weights to diffusion peak images and scores candidate
tractograms after an anchor tractogram has explained part of the signal.
"""

__version__ = "0.1.0"
