"""
Learners and enrolments.

Learner records carry POPIA consent; national IDs are unique platform-wide.
Archiving is a soft delete.
"""
