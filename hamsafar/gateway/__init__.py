"""Admission & dispatch layer in front of a rate-limited generation API.

Provides async infrastructure for sending prompts upstream with:
  - Token-bucket admission control (burst + sustained rate)
  - Serial FIFO or per-request concurrent dispatch with a bounded backlog
  - Exponential-backoff retries on upstream throttling only
  - Submission-ordered reply appends to conversation history
  - Uniform CallResult outcomes (success text or typed failure)
"""
