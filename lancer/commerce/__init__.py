"""Commerce subsystem for lancer: jobs and on-chain escrow."""
