"""trustloop: agent trust scoring, annealing autonomy and workflow runs."""

__version__ = "0.1.0"
