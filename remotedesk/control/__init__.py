"""Remote-control protocol spoken over an established peer connection.

Once two desktops are connected peer-to-peer, the relay server is no longer
involved. Pointer input, clipboard text, and file transfers are exchanged as
control messages on a single ordered data channel.
"""
