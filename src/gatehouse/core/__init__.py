"""Admission-control core: membership, exclusions, join attempts and linking."""
