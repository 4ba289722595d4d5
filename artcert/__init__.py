"""
ArtCert - Artwork Originality Certification

Fingerprints uploaded artwork, detects exact and near-duplicate submissions
against everything certified so far, and issues a permanent certification
record for originals.
"""

__version__ = "1.0.0"
__author__ = "ArtCert Team"
__description__ = "Artwork Originality Certification Service"
