"""
Statistical variable kinds.

Each variable in the analysis declares how it enters a regression: a continuous
measurement is a single column, a binary flag is a single 0/1 column and an ordinal
category is expanded into indicator columns. The independence tester and the
structure learner dispatch on these kinds instead of inspecting dtypes.
"""

import numpy as np
import pandas as pd
from typing import Dict, Iterable, List


class VariableKind:
    """Base class for the statistical type of a variable."""

    name = 'base'
    is_continuous = False

    def encode(self, values: pd.Series) -> np.ndarray:
        """Return the design columns (n x k) representing this variable."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def __eq__(self, other) -> bool:
        return type(self) is type(other)

    def __hash__(self) -> int:
        return hash(type(self))


class Continuous(VariableKind):
    name = 'continuous'
    is_continuous = True

    def encode(self, values: pd.Series) -> np.ndarray:
        return values.to_numpy(dtype=float).reshape(-1, 1)


class Binary(VariableKind):
    name = 'binary'

    def encode(self, values: pd.Series) -> np.ndarray:
        return (values.to_numpy() == 1).astype(float).reshape(-1, 1)


class OrdinalCategorical(VariableKind):
    """Ordered categories, expanded to indicators with the lowest level dropped."""

    name = 'ordinal'

    def encode(self, values: pd.Series) -> np.ndarray:
        levels = np.sort(pd.unique(values.dropna()))
        if len(levels) < 2:
            return np.zeros((len(values), 0))
        arr = values.to_numpy()
        return np.column_stack([(arr == level).astype(float) for level in levels[1:]])


class VariableSchema:
    """Mapping from variable name to its declared kind."""

    def __init__(self, kinds: Dict[str, VariableKind]):
        self._kinds = dict(kinds)

    def __getitem__(self, name: str) -> VariableKind:
        try:
            return self._kinds[name]
        except KeyError:
            raise KeyError(f"Variable '{name}' has no declared kind") from None

    def __contains__(self, name: str) -> bool:
        return name in self._kinds

    def __iter__(self):
        return iter(self._kinds)

    @property
    def names(self) -> List[str]:
        return list(self._kinds)

    def continuous(self) -> List[str]:
        return [name for name, kind in self._kinds.items() if kind.is_continuous]

    def design_matrix(self, df: pd.DataFrame, names: Iterable[str], intercept: bool = True) -> np.ndarray:
        """Stack the encodings of ``names`` column-wise, optionally with an intercept."""
        blocks = [np.ones((len(df), 1))] if intercept else []
        blocks.extend(self[name].encode(df[name]) for name in names)
        if not blocks:
            return np.zeros((len(df), 0))
        return np.hstack(blocks)

    def with_kind(self, name: str, kind: VariableKind) -> "VariableSchema":
        kinds = dict(self._kinds)
        kinds[name] = kind
        return VariableSchema(kinds)

    @classmethod
    def infer(cls, df: pd.DataFrame, max_ordinal_levels: int = 5) -> "VariableSchema":
        """Declare kinds from the data: 0/1 columns are binary, few integer levels ordinal."""
        kinds = {}
        for col in df.columns:
            unique = pd.unique(df[col].dropna())
            if set(unique).issubset({0, 1}):
                kinds[col] = Binary()
            elif len(unique) <= max_ordinal_levels and np.all(np.mod(unique, 1) == 0):
                kinds[col] = OrdinalCategorical()
            else:
                kinds[col] = Continuous()
        return cls(kinds)
