"""Meeting lifecycle module -- schemas, persistence, and orchestration.

Provides the meeting state machine, participant admission and attendance
tracking, host identity handling, and the recording sub-state machine
driven by the capture service.
"""
