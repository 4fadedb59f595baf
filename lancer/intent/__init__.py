"""Intent classification: free-text request -> summary, budget, ranked skills."""

from lancer.intent.classifier import IntentClassifierAdapter, build_classifier
from lancer.intent.keywords import KeywordIntentClassifier

__all__ = ["IntentClassifierAdapter", "KeywordIntentClassifier", "build_classifier"]
