"""Flask adapter exposing the relying party login endpoints."""
