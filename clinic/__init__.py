"""Clinic application of the Dimedio backend.

Models, services, serializers and views for patients, AI-assisted
diagnoses, the drug inventory and organizations.
"""
