"""
Survival and ranking experiments on simulated data.

Cox proportional hazards boosting on censored exponential survival times,
and pairwise ranking (concordance and NDCG) within query groups.
"""

import sys
from pathlib import Path

OUT_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(OUT_DIR.parent / "src"))

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from gbmboost import GradientBoostingSurvivalAnalysis, GradientBoostingRanker

# Set style
plt.style.use('seaborn-v0_8-darkgrid')


def concordance_index(time, event, risk):
    """Harrell's C: fraction of comparable pairs ordered correctly by risk."""
    concordant = 0.0
    comparable = 0
    for i in np.flatnonzero(event > 0):
        later = time > time[i]
        comparable += np.count_nonzero(later)
        concordant += np.sum(risk[i] > risk[later]) + 0.5 * np.sum(risk[i] == risk[later])
    return concordant / comparable


def ndcg_at(scores, relevance, group, k=5):
    values = []
    for g in np.unique(group):
        idx = np.flatnonzero(group == g)
        order = idx[np.argsort(-scores[idx], kind="mergesort")][:k]
        ideal = np.sort(relevance[idx])[::-1][:k]
        discount = 1.0 / np.log2(np.arange(2, order.shape[0] + 2))
        best = np.sum(ideal * discount)
        if best > 0:
            values.append(np.sum(relevance[order] * discount) / best)
    return float(np.mean(values))


def experiment_survival():
    print("\n" + "="*60)
    print("Experiment 1: Cox proportional hazards")
    print("="*60)

    rng = np.random.default_rng(42)
    n = 2000
    X = rng.normal(size=(n, 5))
    log_hazard = X[:, 0] + 0.5 * np.maximum(X[:, 1], 0)
    time = rng.exponential(np.exp(-log_hazard))
    censor = rng.exponential(2.0, size=n)
    event = (time <= censor).astype(float)
    time = np.minimum(time, censor)
    print(f"Events: {int(event.sum())} of {n}")

    model = GradientBoostingSurvivalAnalysis(
        n_estimators=300, learning_rate=0.05, interaction_depth=2,
        train_fraction=0.75, random_state=42
    )
    model.fit(X, time, event)
    best = model.best_iteration("test")
    held_out = slice(int(0.75 * n), None)
    risk = model.predict(X[held_out], n_iterations=best)
    c_index = concordance_index(time[held_out], event[held_out], risk)
    print(f"Best iteration: {best}, held-out C-index: {c_index:.4f}")

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.plot(model.train_scores_, label='Train', linewidth=2)
    ax.plot(model.val_scores_, label='Held-out', linewidth=2)
    ax.axvline(best - 1, linestyle='--', color='k', alpha=0.6)
    ax.set_xlabel('Iteration')
    ax.set_ylabel('Partial likelihood deviance')
    ax.set_title('Cox Boosting')
    ax.legend()
    plt.tight_layout()
    plt.savefig(OUT_DIR / 'survival_deviance.png', dpi=150)
    print("\nSaved plot: survival_deviance.png")

    return {'model': 'coxph', 'best_iteration': best, 'metric': 'c_index', 'value': c_index}


def experiment_ranking():
    print("\n" + "="*60)
    print("Experiment 2: Pairwise ranking")
    print("="*60)

    rng = np.random.default_rng(7)
    n_groups, per_group = 200, 15
    group = np.repeat(np.arange(n_groups), per_group)
    X = rng.normal(size=(group.shape[0], 4))
    relevance = np.clip(np.round(1.5 + X[:, 0] - 0.5 * X[:, 2]
                                 + rng.normal(scale=0.5, size=group.shape[0])), 0, 4)
    train = group < 150

    results = []
    for metric in ("conc", "ndcg"):
        model = GradientBoostingRanker(
            metric=metric, max_rank=5 if metric == "ndcg" else None,
            n_estimators=150, interaction_depth=3, min_samples_leaf=10,
            random_state=42
        )
        model.fit(X[train], relevance[train], group[train])
        scores = model.predict(X[~train])
        value = ndcg_at(scores, relevance[~train], group[~train], k=5)
        print(f"metric={metric}: held-out NDCG@5 = {value:.4f}")
        results.append({'model': f'pairwise-{metric}', 'best_iteration': model.n_estimators,
                        'metric': 'ndcg@5', 'value': value})
    return results


def main():
    print("="*60)
    print("Survival and Ranking Experiments")
    print("="*60)

    rows = [experiment_survival()] + experiment_ranking()
    results = pd.DataFrame(rows)
    results.to_csv(OUT_DIR / 'survival_ranking_results.csv', index=False)

    print("\n" + "="*60)
    print("Results Summary")
    print("="*60)
    print(results.to_string(index=False))


if __name__ == "__main__":
    main()
