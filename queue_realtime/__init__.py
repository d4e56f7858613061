"""
Real-time queue event, notification and timer core.

Keeps one persistent connection to the queue event server, joins the channels
a staff member's role requires, turns pushed queue events into deduplicated
local alerts and stale query listings, and runs wall-clock anchored dilation
countdowns.
"""

__version__ = "0.1.0"
