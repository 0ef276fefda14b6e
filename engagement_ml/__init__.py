"""
Member Engagement Analytics

Turns organization interaction logs into per-member feature vectors,
segments members with k-means and predicts RSVP likelihood with a
logistic regression trained on the same features.
"""

__version__ = "1.0.0"
