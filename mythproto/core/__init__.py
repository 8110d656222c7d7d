"""
Core package.

Holds the parts of the client that do not touch sockets themselves: event
objects, the listener registry and the one-shot event waiter.

Consumers should usually import from the specific module they need
(e.g. `mythproto.core.events`).
"""
