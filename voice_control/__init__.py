"""
Host surface for the voice pipeline: HTTP control API and the host bridge.
"""
