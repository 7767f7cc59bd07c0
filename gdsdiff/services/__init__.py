"""Pipeline stages: data access, analysis, reporting and visualization."""
