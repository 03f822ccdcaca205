# Copyright (c) Syntropy Systems
"""driftgate command line interface."""
