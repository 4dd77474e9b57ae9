# BioWatch - Main Package
#
# Threat-intel ingestion for the bio-economy: pulls public feeds,
# keeps what matters to healthcare and life-science operators,
# classifies it and stores it for analyst review.

__version__ = "0.1.0"
__author__ = "BioWatch Team"
__description__ = "Threat intelligence ingestion for the bio-economy"

__all__ = ["__version__"]
