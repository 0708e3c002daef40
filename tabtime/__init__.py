"""Per-URL focused time tracking, aggregated per local calendar day."""
