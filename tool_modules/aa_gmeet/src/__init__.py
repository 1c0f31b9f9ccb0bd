"""
Google Meet voice bridge.

This module provides:
- Tracking of the page's RTCPeerConnection objects from before page load
- Takeover of the outbound microphone sender with a local Web Audio graph
- Single-flight playback of synthesized speech into the live call
- Session lifecycle with guaranteed browser teardown
"""

from tool_modules.common import PROJECT_ROOT

__project_root__ = PROJECT_ROOT
__version__ = "0.1.0"
