"""
Gallery Archiver – Keep a local, resumable copy of FurAffinity galleries.

Supports:
  • Walking galleries, scraps and favorites for new submission links
  • Harvesting submission metadata and comments into PostgreSQL
  • Downloading content and thumbnails with retry and outage detection
  • Reorganizing older downloads into per-account folders
  • Resumable operation via deduplication and per-item status
"""
