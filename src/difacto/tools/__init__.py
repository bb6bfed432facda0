"""Command line tooling for difacto checkpoints (see :mod:`.sgd_checkpoint`)."""
