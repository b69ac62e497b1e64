"""Pure helpers: decay ranking, selection, gating, extraction, redaction."""
