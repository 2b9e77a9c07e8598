"""Unit tests for structure-preserving stain normalization."""
