"""Glucose sync infrastructure for GuardianView.

Modules:
    orchestrator: One cycle over all campers (batched, isolated per camper)
    scheduler:    Fixed-interval background loop and manual "sync now"
    dedup:        Reading dedup keys and insert-if-absent SQL
"""
