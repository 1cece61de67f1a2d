"""
Regression experiment on the California Housing dataset.

Compares regression losses, selects the number of trees with the test-set,
cross-validation and out-of-bag estimators, and reports relative influence.
"""

import sys
from pathlib import Path

OUT_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(OUT_DIR.parent / "src"))

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from sklearn.datasets import fetch_california_housing
from sklearn.model_selection import train_test_split
from sklearn.tree import DecisionTreeRegressor
from sklearn.metrics import mean_squared_error, mean_absolute_error

from gbmboost import (
    GradientBoostingRegressor, TrainingConfig, Gaussian, fit, predict,
    best_iteration, perf_table, relative_influence
)

# Set style
plt.style.use('seaborn-v0_8-darkgrid')


def load_and_prepare_data(n_samples=6000):
    """Load California Housing, subsample for speed and split 80/20."""
    print("Loading California Housing dataset...")
    data = fetch_california_housing()
    rng = np.random.default_rng(42)
    rows = rng.choice(data.data.shape[0], size=n_samples, replace=False)
    X, y = data.data[rows], data.target[rows]

    X_train, X_test, y_train, y_test = train_test_split(
        X, y, test_size=0.2, random_state=42
    )
    print(f"Train: {X_train.shape}, Test: {X_test.shape}")
    return X_train, X_test, y_train, y_test, list(data.feature_names)


def baseline_comparison(X_train, X_test, y_train, y_test):
    """Baseline: single DecisionTreeRegressor."""
    print("\n" + "="*60)
    print("Baseline: Single Decision Tree Regressor")
    print("="*60)

    dt = DecisionTreeRegressor(max_depth=3, random_state=42)
    dt.fit(X_train, y_train)
    test_mse = mean_squared_error(y_test, dt.predict(X_test))
    print(f"Test MSE:  {test_mse:.6f}")
    return test_mse


def experiment_losses(X_train, X_test, y_train, y_test):
    """Experiment: squared, absolute, t-distribution and median losses."""
    print("\n" + "="*60)
    print("Experiment 1: Effect of the loss distribution")
    print("="*60)

    losses = [
        ("gaussian", {}),
        ("laplace", {}),
        ("tdist", {"df": 4.0}),
        ("quantile", {"alpha": 0.5}),
    ]
    results = []
    for name, params in losses:
        print(f"\nFitting with loss={name}...")
        gbr = GradientBoostingRegressor(
            loss=name, n_estimators=300, learning_rate=0.1, interaction_depth=4,
            train_fraction=0.8, random_state=42, **params
        )
        gbr.fit(X_train, y_train)
        best = gbr.best_iteration("test")
        pred = gbr.predict(X_test, n_iterations=best)
        results.append({
            'loss': name,
            'best_iteration': best,
            'test_mse': mean_squared_error(y_test, pred),
            'test_mae': mean_absolute_error(y_test, pred),
        })
        print(f"Best iteration: {best}, Test MSE: {results[-1]['test_mse']:.6f}")
    return pd.DataFrame(results)


def experiment_iteration_selection(X_train, X_test, y_train, y_test):
    """Experiment: number of trees chosen by test set, CV and OOB."""
    print("\n" + "="*60)
    print("Experiment 2: Choosing the number of trees")
    print("="*60)

    config = TrainingConfig(
        n_trees=400, interaction_depth=4, shrinkage=0.05, bag_fraction=0.5,
        num_train=int(0.8 * X_train.shape[0]), cv_folds=5, n_jobs=-1, seed=42
    )
    result = fit(config, Gaussian(), X_train, y_train)
    table = perf_table(result)
    table.to_csv(OUT_DIR / 'regression_perf_table.csv')

    results = []
    for method in ("test", "cv", "oob"):
        best = best_iteration(result, method)
        test_mse = mean_squared_error(y_test, predict(result, X_test, best))
        results.append({'method': method, 'best_iteration': best, 'test_mse': test_mse})
        print(f"{method:>4}: best={best}, Test MSE={test_mse:.6f}")

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.plot(table.index, 2 * table['train'], label='Train', linewidth=2)
    ax.plot(table.index, 2 * table['valid'], label='Held-out', linewidth=2)
    ax.plot(table.index, 2 * table['cv'], label='5-fold CV', linewidth=2)
    for row in results:
        ax.axvline(row['best_iteration'], linestyle='--', alpha=0.6, label=f"best ({row['method']})")
    ax.set_xlabel('Iteration')
    ax.set_ylabel('MSE')
    ax.set_title('Iteration Selection')
    ax.legend()
    ax.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig(OUT_DIR / 'regression_iteration_selection.png', dpi=150)
    print("\nSaved plot: regression_iteration_selection.png")

    return result, pd.DataFrame(results)


def experiment_influence(result, feature_names):
    """Relative influence of each feature at the CV-selected iteration."""
    print("\n" + "="*60)
    print("Experiment 3: Relative influence")
    print("="*60)

    best = best_iteration(result, "cv")
    influence = pd.Series(relative_influence(result, best, normalize=True),
                          index=feature_names).sort_values()
    print(influence.sort_values(ascending=False).to_string())

    fig, ax = plt.subplots(figsize=(8, 5))
    influence.plot.barh(ax=ax)
    ax.set_xlabel('Relative influence (%)')
    ax.set_title(f'Relative Influence ({best} trees)')
    plt.tight_layout()
    plt.savefig(OUT_DIR / 'regression_influence.png', dpi=150)
    print("\nSaved plot: regression_influence.png")
    return influence


def main():
    """Run all regression experiments."""
    print("="*60)
    print("Gradient Boosting Regression Experiments")
    print("California Housing Dataset")
    print("="*60)

    X_train, X_test, y_train, y_test, feature_names = load_and_prepare_data()

    baseline_comparison(X_train, X_test, y_train, y_test)
    results_losses = experiment_losses(X_train, X_test, y_train, y_test)
    result, results_selection = experiment_iteration_selection(X_train, X_test, y_train, y_test)
    experiment_influence(result, feature_names)

    results_losses.to_csv(OUT_DIR / 'regression_losses_results.csv', index=False)
    results_selection.to_csv(OUT_DIR / 'regression_selection_results.csv', index=False)

    print("\n" + "="*60)
    print("Results Summary")
    print("="*60)
    print("\nEffect of loss:")
    print(results_losses.to_string(index=False))
    print("\nIteration selection:")
    print(results_selection.to_string(index=False))

    print("\n" + "="*60)
    print("Regression Experiments Complete!")
    print("="*60)


if __name__ == "__main__":
    main()
