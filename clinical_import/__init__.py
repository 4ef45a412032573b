"""Clinical Import - heterogeneous clinical data import pipeline.

Converts CSV exports, JSON exports, HL7 FHIR Composition documents and HTML
survey pages into one canonical set of patients, visits and observations.
"""

__version__ = "1.0.0"
