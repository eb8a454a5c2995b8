"""
Persona prompt files for the responder.

Each persona defines:
- name: Persona identifier
- prompt: Base system instruction for the model
- farewell_text: Spoken when the user ends the conversation
- fallback_text: Spoken when no usable reply could be generated
"""
