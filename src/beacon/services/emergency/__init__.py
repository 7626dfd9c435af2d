"""
Emergency dispatch services: incident storage, proximity matching,
notification fan-out and responder coordination.
"""
