"""Provider-independent domain types and pure derivation logic."""
