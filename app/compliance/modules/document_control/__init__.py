"""
Document Control module.

- Documents move draft -> in_review -> approved -> obsolete; only the lifecycle
  functions change Document.status
- Versions are immutable, numbered 1..n per document, and scanned before use
- Approval workflows (sequential or parallel) gate the in_review -> approved edge
- Meaningful actions are recorded to the append-only audit trail
"""

