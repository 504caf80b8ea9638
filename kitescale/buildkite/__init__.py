from kitescale.buildkite.client import BuildkiteMetricsClient

__all__ = ["BuildkiteMetricsClient"]
