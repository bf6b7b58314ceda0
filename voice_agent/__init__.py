"""
Voice agent turn orchestration.

One conversational turn: capture -> reasoning -> synthesis.
Speech capture and speech output are pluggable providers; reasoning goes
through an OpenAI-compatible chat completions API.

- Components talk over an in-process event bus
- At most one turn is in progress at a time
- Capture keeps listening across spontaneous stream ends (auto-restart)
- Every turn is observable via structured logs and telemetry events
"""
