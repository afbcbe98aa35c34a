"""Classify command - show the triage decision for a title."""

import json
from typing import List, Optional

from ..core.models import SyncConfig
from ..sync.triage import TriageClassifier


class ClassifyCommand:
    """Runs the triage classifier on ad-hoc input."""

    def __init__(self, config: SyncConfig, verbose: bool = False,
                 classifier: Optional[TriageClassifier] = None):
        self.config = config
        self.verbose = verbose
        # Always enabled here; the config flag only gates the sync pass
        self.classifier = classifier or TriageClassifier(
            enabled=True,
            endpoint=config.triage_endpoint,
            min_confidence=config.triage_min_confidence,
            timeout=config.triage_timeout,
        )

    def run(self, title: str, notes: Optional[str] = None, tags: Optional[List[str]] = None,
            as_json: bool = False) -> bool:
        result = self.classifier.classify(title, notes, tags or [])
        if as_json:
            print(json.dumps(result.to_dict(), indent=2))
            return True

        print(f"Persona:    {result.persona.value}")
        print(f"Confidence: {result.confidence:.2f}")
        print(f"Source:     {result.source}")
        if result.suggested_theme:
            print(f"Theme:      {result.suggested_theme}")
        return True
