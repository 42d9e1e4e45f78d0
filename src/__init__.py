"""
livebroadcaster
Schedules live broadcasts, registers their live events on the target
platforms and supervises the transcoder processes that stream them.
"""

__version__ = "0.3.0"
__description__ = "Broadcast scheduler and transcoder process supervisor"
