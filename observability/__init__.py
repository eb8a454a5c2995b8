"""
Structured events shared by the voice pipeline and the host surface.
"""
