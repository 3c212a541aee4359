"""FHIR interoperability sync engine."""
