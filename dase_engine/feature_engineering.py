"""
Feature Engineering Module

Shared building blocks for the matrix-based algorithms:
- User/item index mappings
- Sparse user-item rating matrix
- Global mean and user/item biases
- Sparse interaction filtering (used by FilteringPreparator)
"""

import pandas as pd
import numpy as np
from scipy.sparse import csr_matrix
from typing import Tuple, Dict


def build_user_item_matrix(ratings_df: pd.DataFrame) -> Tuple[csr_matrix, Dict]:
    """
    Build sparse user-item rating matrix and create index mappings.

    Args:
        ratings_df: DataFrame with columns: user, item, rating

    Returns:
        Tuple of (sparse_matrix, mappings_dict) where:
        - sparse_matrix: scipy.sparse.csr_matrix of shape (n_users, n_items)
        - mappings_dict: see create_user_item_mappings()

    Note:
        Duplicate (user, item) rows are summed by csr_matrix, so callers that
        care about repeated ratings should de-duplicate first.

    Example:
        >>> matrix, mappings = build_user_item_matrix(ratings_df)
        >>> print(matrix.shape)
        (943, 1682)
    """
    mappings = create_user_item_mappings(ratings_df)

    user_indices = ratings_df['user'].map(mappings['user_mapping']).to_numpy()
    item_indices = ratings_df['item'].map(mappings['item_mapping']).to_numpy()
    ratings = ratings_df['rating'].to_numpy(dtype=np.float64)

    sparse_matrix = csr_matrix(
        (ratings, (user_indices, item_indices)),
        shape=(mappings['n_users'], mappings['n_items']),
        dtype=np.float64
    )

    return sparse_matrix, mappings


def create_user_item_mappings(ratings_df: pd.DataFrame) -> Dict:
    """
    Create bidirectional mappings between user/item IDs and integer indices.

    Indices follow first appearance in the table, so the same table always
    yields the same mappings.

    Returns:
        Dict with user_mapping, item_mapping, reverse_user_mapping,
        reverse_item_mapping, n_users, n_items
    """
    unique_users = ratings_df['user'].unique()
    unique_items = ratings_df['item'].unique()

    user_mapping = {user: idx for idx, user in enumerate(unique_users)}
    item_mapping = {item: idx for idx, item in enumerate(unique_items)}

    reverse_user_mapping = {idx: user for user, idx in user_mapping.items()}
    reverse_item_mapping = {idx: item for item, idx in item_mapping.items()}

    return {
        'user_mapping': user_mapping,
        'item_mapping': item_mapping,
        'reverse_user_mapping': reverse_user_mapping,
        'reverse_item_mapping': reverse_item_mapping,
        'n_users': len(unique_users),
        'n_items': len(unique_items)
    }


def calculate_global_statistics(ratings_df: pd.DataFrame, mappings: Dict,
                                damping: float = 0.0) -> Dict:
    """
    Calculate global statistics for bias modeling.

    Args:
        ratings_df: DataFrame with user, item, rating
        mappings: Dict with user_mapping and item_mapping
        damping: Added to each bias denominator, shrinking biases of users
            and items with few ratings towards zero (0 gives plain means)

    Returns:
        Dict with:
        - global_mean: float (mean rating across all interactions)
        - user_biases: np.array (user bias = user_mean - global_mean)
        - item_biases: np.array (item bias = item_mean - global_mean)
    """
    global_mean = float(ratings_df['rating'].mean())

    deviations = ratings_df.assign(rating=ratings_df['rating'] - global_mean)
    user_stats = deviations.groupby('user', sort=False)['rating'].agg(['sum', 'count'])
    item_stats = deviations.groupby('item', sort=False)['rating'].agg(['sum', 'count'])

    user_biases = np.zeros(mappings['n_users'])
    item_biases = np.zeros(mappings['n_items'])

    user_idx = user_stats.index.map(mappings['user_mapping']).to_numpy(dtype=int)
    item_idx = item_stats.index.map(mappings['item_mapping']).to_numpy(dtype=int)
    user_biases[user_idx] = user_stats['sum'].to_numpy() / (user_stats['count'].to_numpy() + damping)
    item_biases[item_idx] = item_stats['sum'].to_numpy() / (item_stats['count'].to_numpy() + damping)

    return {
        'global_mean': global_mean,
        'user_biases': user_biases,
        'item_biases': item_biases
    }


def filter_sparse_interactions(ratings_df: pd.DataFrame,
                               min_user_interactions: int = 5,
                               min_item_interactions: int = 3) -> pd.DataFrame:
    """
    Filter out users and items with too few interactions.

    Users are filtered first, then items, in a single pass.

    Args:
        ratings_df: DataFrame with user, item, rating
        min_user_interactions: Minimum number of interactions per user
        min_item_interactions: Minimum number of interactions per item

    Returns:
        Filtered DataFrame (a copy; the input is left untouched)
    """
    df = ratings_df.copy()

    if min_user_interactions > 0:
        user_counts = df['user'].value_counts()
        valid_users = user_counts[user_counts >= min_user_interactions].index
        df = df[df['user'].isin(valid_users)]

    if min_item_interactions > 0:
        item_counts = df['item'].value_counts()
        valid_items = item_counts[item_counts >= min_item_interactions].index
        df = df[df['item'].isin(valid_items)]

    return df
