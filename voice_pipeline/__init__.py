"""
Voice pipeline for the ViVi assistant.

Realtime conversation loop: capture -> endpointing -> responder -> speech
No host I/O of its own (capture, speech and audio output are capabilities).

- Endpointing decides when the user has finished speaking
- Replies are split into sentences and synthesized ahead of playback need
- Every stage stays interruptible; toggling off silences output immediately
- All behavior is observable via structured events
"""
