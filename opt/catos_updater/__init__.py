"""
CatOS update client.

Checks the remote manifest for a newer OS package, downloads and verifies
it, and hands it to the privileged installer.
"""

__version__ = '1.0.0'
