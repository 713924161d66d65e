"""
Utils package for the CatOS update client.

This package contains utility functions for:
- Safe file name handling
- Archive extraction
- Path cleanup
"""
