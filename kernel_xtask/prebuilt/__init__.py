"""Prebuilt archives: catalog, download and extraction."""
