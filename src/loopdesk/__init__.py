"""LoopDesk - command-dispatch and event-streaming bridge for a desktop workflow host.

The host side (``loopdesk.host``) owns child processes, file watches and
per-channel admission control. The client side (``loopdesk.client``) mirrors
execution state and file changes from the pushed event channel.
"""

__version__ = "0.3.0"
