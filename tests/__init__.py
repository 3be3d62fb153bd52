"""Test package for ResearchEx."""
