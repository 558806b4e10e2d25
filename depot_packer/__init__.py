"""Runs DepotDownloader and packs its output as a ready-to-use Steam library folder."""

__version__ = "1.0.0"
