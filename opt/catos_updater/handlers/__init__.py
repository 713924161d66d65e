"""
Handlers package for the CatOS update client.

This package contains API request handlers for:
- Current version lookup
- Update checks
- Download-and-install and its status
- Session acknowledgement and update history
- The WebSocket progress stream
"""
