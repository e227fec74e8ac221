# -*- coding: utf-8 -*-
"""Download files from public, restricted and draft Zenodo records."""
from .config import ZENODO_DL_VERSION

__version__ = ZENODO_DL_VERSION
