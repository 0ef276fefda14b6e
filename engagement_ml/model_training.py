"""
Model training and evaluation.

Fits a logistic regression RSVP classifier by full-batch gradient descent
and reports training-set metrics.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Optional, Tuple
import numpy as np
from sklearn.metrics import accuracy_score, log_loss, roc_auc_score
from sklearn.preprocessing import StandardScaler
from engagement_ml.config import Config
from engagement_ml.exceptions import DegenerateTrainingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassifierModel:
    """Logistic regression coefficients: one weight per feature plus a bias."""
    weights: np.ndarray
    bias: float
    loss_history: Tuple[float, ...] = ()

    def __post_init__(self):
        self.weights.setflags(write=False)

    def decision_function(self, X: np.ndarray) -> np.ndarray:
        return np.asarray(X, dtype=float) @ self.weights + self.bias

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        return sigmoid(self.decision_function(X))

    @property
    def final_loss(self) -> Optional[float]:
        return self.loss_history[-1] if self.loss_history else None


def sigmoid(z: np.ndarray) -> np.ndarray:
    """Numerically stable logistic function."""
    z = np.asarray(z, dtype=float)
    return np.exp(-np.logaddexp(0.0, -z))


def binary_cross_entropy(y: np.ndarray, p: np.ndarray, eps: float = 1e-12) -> float:
    p = np.clip(p, eps, 1 - eps)
    return float(-np.mean(y * np.log(p) + (1 - y) * np.log(1 - p)))


def fit_scaler(X: np.ndarray) -> StandardScaler:
    """
    Fit a standardizing scaler on the feature matrix.

    Zero-variance columns are left unscaled (scikit-learn uses a unit scale).
    """
    scaler = StandardScaler()
    scaler.fit(X)
    return scaler


@dataclass(frozen=True)
class EpochResult:
    epoch: int
    weights: np.ndarray
    bias: float
    loss: float


def iter_gradient_descent(
    X: np.ndarray,
    y: np.ndarray,
    learning_rate: float = Config.LEARNING_RATE,
    epochs: int = Config.EPOCHS
) -> Iterator[EpochResult]:
    """
    Run full-batch gradient descent on the logistic loss, one epoch per item.

    Each epoch computes sigmoid(X.w + b) for the whole batch and steps
    along the closed-form cross-entropy gradient X^T (p - y) / n. No
    momentum, adaptive rate or regularization term. Weights start at zero.

    Raises:
        DegenerateTrainingError: If the weights or loss become non-finite
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    if X.ndim != 2 or len(X) != len(y):
        raise ValueError(f"Shape mismatch: X {X.shape}, y {y.shape}")
    if len(X) == 0:
        raise ValueError("Cannot train on an empty feature matrix")

    logger.info(
        f"Training logistic regression with learning_rate={learning_rate}, epochs={epochs} "
        f"({len(X)} samples, {int(y.sum())} positive)"
    )

    n_samples, n_features = X.shape
    weights = np.zeros(n_features)
    bias = 0.0

    for epoch in range(1, epochs + 1):
        p = sigmoid(X @ weights + bias)
        error = p - y

        grad_w = X.T @ error / n_samples
        grad_b = float(error.mean())

        weights = weights - learning_rate * grad_w
        bias = bias - learning_rate * grad_b

        loss = binary_cross_entropy(y, sigmoid(X @ weights + bias))
        if not (np.all(np.isfinite(weights)) and np.isfinite(bias) and np.isfinite(loss)):
            raise DegenerateTrainingError(f"Gradient descent diverged at epoch {epoch}")

        yield EpochResult(epoch=epoch, weights=weights, bias=float(bias), loss=loss)


def collect_classifier(n_features: int, epochs: Iterable[EpochResult]) -> ClassifierModel:
    """Build the final ClassifierModel from a gradient descent run."""
    weights = np.zeros(n_features)
    bias = 0.0
    losses = []
    for result in epochs:
        weights, bias = result.weights, result.bias
        losses.append(result.loss)

    logger.info("Model training completed")
    if losses:
        logger.info(f"Final training loss: {losses[-1]:.4f}")

    return ClassifierModel(weights=np.array(weights), bias=float(bias), loss_history=tuple(losses))


def train_logistic_regression(
    X: np.ndarray,
    y: np.ndarray,
    learning_rate: float = Config.LEARNING_RATE,
    epochs: int = Config.EPOCHS
) -> ClassifierModel:
    """
    Train a logistic regression model with full-batch gradient descent.

    Args:
        X: Training feature matrix (n x d)
        y: Binary target (n,)
        learning_rate: Fixed step size
        epochs: Number of full-batch updates

    Returns:
        Fitted ClassifierModel
    """
    X = np.asarray(X, dtype=float)
    n_features = X.shape[1] if X.ndim == 2 else 0
    return collect_classifier(n_features, iter_gradient_descent(X, y, learning_rate, epochs))


def evaluate_classifier(
    model: ClassifierModel,
    X: np.ndarray,
    y: np.ndarray
) -> Dict[str, object]:
    """
    Evaluate the classifier on its own training data.

    There is no held-out set, so these numbers describe fit, not
    generalization.

    Args:
        model: Trained model
        X: Feature matrix the model was trained on
        y: Binary target

    Returns:
        Dictionary with evaluation metrics
    """
    y = np.asarray(y, dtype=float)
    proba = model.predict_proba(X)
    y_pred = (proba >= 0.5).astype(float)

    accuracy = accuracy_score(y, y_pred)
    loss = log_loss(y, proba, labels=[0.0, 1.0])
    both_classes = len(np.unique(y)) == 2
    roc_auc = float(roc_auc_score(y, proba)) if both_classes else None

    metrics = {
        "accuracy": float(accuracy),
        "log_loss": float(loss),
        "roc_auc": roc_auc,
        "positive_rate": float(y.mean()) if len(y) else 0.0,
        "mean_predicted_probability": float(proba.mean()) if len(proba) else 0.0,
        "evaluated_on_training_data": True,
    }

    logger.info("Model Evaluation Results (training data):")
    logger.info(f"  Accuracy: {metrics['accuracy']:.3f}")
    logger.info(f"  Log loss: {metrics['log_loss']:.4f}")
    if roc_auc is not None:
        logger.info(f"  ROC-AUC: {roc_auc:.3f}")
    else:
        logger.warning("  ROC-AUC undefined: training target has a single class")
    logger.info(f"  Positive rate: {metrics['positive_rate']:.1%}")

    return metrics
