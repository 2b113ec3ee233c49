"""Core engine components: digest, custody, signing, timestamping, verification."""
