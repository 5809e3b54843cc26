"""Result cache keyed by query fingerprints, with single-flight computation."""
