"""docharvest: resumable listing -> detail -> document harvesting.

Site knowledge lives in YAML selection plans; the package provides the
fetch layer, extractor, pagination controller, run state store and the
stage orchestrator that ties them together.

Entry point: `docharvest` (console script).
"""

__version__ = "0.1.0"
