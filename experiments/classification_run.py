"""
Classification experiment on the Breast Cancer dataset.

Fits Bernoulli, AdaBoost and huberized hinge boosting, tracks held-out
deviance and shows how fit_more extends an existing model.
"""

import sys
from pathlib import Path

OUT_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(OUT_DIR.parent / "src"))

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from sklearn.datasets import load_breast_cancer
from sklearn.model_selection import train_test_split
from sklearn.tree import DecisionTreeClassifier
from sklearn.metrics import accuracy_score, roc_auc_score, roc_curve

from gbmboost import GradientBoostingClassifier

# Set style
plt.style.use('seaborn-v0_8-darkgrid')


def load_and_prepare_data():
    """Load Breast Cancer dataset and split 80/20."""
    print("Loading Breast Cancer dataset...")
    data = load_breast_cancer()
    X, y = data.data, data.target

    X_train, X_test, y_train, y_test = train_test_split(
        X, y, test_size=0.2, random_state=42, stratify=y
    )
    print(f"Train: {X_train.shape}, Test: {X_test.shape}")
    print(f"Class distribution - Train: {np.bincount(y_train)}, Test: {np.bincount(y_test)}")
    return X_train, X_test, y_train, y_test


def baseline_comparison(X_train, X_test, y_train, y_test):
    """Baseline: single DecisionTreeClassifier."""
    print("\n" + "="*60)
    print("Baseline: Single Decision Tree Classifier")
    print("="*60)

    dt = DecisionTreeClassifier(max_depth=3, random_state=42)
    dt.fit(X_train, y_train)
    test_acc = accuracy_score(y_test, dt.predict(X_test))
    test_auc = roc_auc_score(y_test, dt.predict_proba(X_test)[:, 1])
    print(f"Test Accuracy:  {test_acc:.4f}")
    print(f"Test ROC AUC:   {test_auc:.4f}")
    return test_acc, test_auc


def experiment_losses(X_train, X_test, y_train, y_test):
    """Experiment: binomial deviance against exponential and huberized hinge losses."""
    print("\n" + "="*60)
    print("Experiment 1: Effect of the loss distribution")
    print("="*60)

    results = []
    fig, (ax_curve, ax_roc) = plt.subplots(1, 2, figsize=(14, 5))

    for loss in ("bernoulli", "adaboost", "huberized"):
        print(f"\nFitting with loss={loss}...")
        gbc = GradientBoostingClassifier(
            loss=loss, n_estimators=300, learning_rate=0.05, interaction_depth=3,
            min_samples_leaf=5, cv_folds=5, random_state=42
        )
        gbc.fit(X_train, y_train)
        best = gbc.best_iteration("cv")
        proba = gbc.predict_proba(X_test, n_iterations=best)
        test_acc = accuracy_score(y_test, gbc.predict(X_test, n_iterations=best))
        test_auc = roc_auc_score(y_test, proba)
        print(f"Best iteration: {best}, Test Accuracy: {test_acc:.4f}, ROC AUC: {test_auc:.4f}")

        results.append({
            'loss': loss,
            'best_iteration': best,
            'test_acc': test_acc,
            'test_auc': test_auc,
        })

        ax_curve.plot(np.arange(1, len(gbc.cv_scores_) + 1), gbc.cv_scores_, label=loss, linewidth=2)
        fpr, tpr, _ = roc_curve(y_test, proba)
        ax_roc.plot(fpr, tpr, label=f'{loss} (AUC={test_auc:.3f})', linewidth=2)

    ax_curve.set_xlabel('Iteration')
    ax_curve.set_ylabel('CV loss')
    ax_curve.set_title('Cross-validated Loss')
    ax_curve.legend()
    ax_roc.plot([0, 1], [0, 1], 'k--', alpha=0.5)
    ax_roc.set_xlabel('False positive rate')
    ax_roc.set_ylabel('True positive rate')
    ax_roc.set_title('ROC on Test Set')
    ax_roc.legend()
    plt.tight_layout()
    plt.savefig(OUT_DIR / 'classification_losses.png', dpi=150)
    print("\nSaved plot: classification_losses.png")

    return pd.DataFrame(results)


def experiment_fit_more(X_train, X_test, y_train, y_test):
    """Experiment: grow a model in stages with fit_more."""
    print("\n" + "="*60)
    print("Experiment 2: Continuing a fit")
    print("="*60)

    gbc = GradientBoostingClassifier(
        n_estimators=50, learning_rate=0.1, interaction_depth=2,
        train_fraction=0.8, random_state=42
    )
    gbc.fit(X_train, y_train)
    results = []
    for _ in range(4):
        test_acc = accuracy_score(y_test, gbc.predict(X_test))
        results.append({
            'n_estimators': len(gbc.estimators_),
            'best_iteration': gbc.best_iteration("test"),
            'test_acc': test_acc,
        })
        print(f"{len(gbc.estimators_)} trees: Test Accuracy {test_acc:.4f}")
        gbc.fit_more(50)
    return pd.DataFrame(results)


def main():
    """Run all classification experiments."""
    print("="*60)
    print("Gradient Boosting Classification Experiments")
    print("Breast Cancer Dataset")
    print("="*60)

    X_train, X_test, y_train, y_test = load_and_prepare_data()

    baseline_comparison(X_train, X_test, y_train, y_test)
    results_losses = experiment_losses(X_train, X_test, y_train, y_test)
    results_more = experiment_fit_more(X_train, X_test, y_train, y_test)

    results_losses.to_csv(OUT_DIR / 'classification_losses_results.csv', index=False)
    results_more.to_csv(OUT_DIR / 'classification_fit_more_results.csv', index=False)

    print("\n" + "="*60)
    print("Results Summary")
    print("="*60)
    print("\nEffect of loss:")
    print(results_losses.to_string(index=False))
    print("\nContinuation:")
    print(results_more.to_string(index=False))

    print("\n" + "="*60)
    print("Classification Experiments Complete!")
    print("="*60)


if __name__ == "__main__":
    main()
