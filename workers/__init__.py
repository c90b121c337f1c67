"""Background workers for the card vault inventory service."""
