"""Layers, embeddings and the append-only results collection."""

from dataclasses import dataclass, field

import numpy as np
import pandas as pd


def _freeze(df):
    values = np.array(df.values, dtype=float, copy=True)
    values.setflags(write=False)
    return pd.DataFrame(values, index=df.index.copy(), columns=df.columns.copy())


class Layer:
    """Named genes x cells matrix derived from the raw counts. Values are read-only."""

    kind = "layer"

    def __init__(self, name, values):
        if not isinstance(values, pd.DataFrame):
            raise TypeError(f"Layer values must be a DataFrame, got {type(values).__name__}")
        if values.columns.has_duplicates:
            raise ValueError(f"Layer '{name}' has duplicated cell ids")
        self.name = name
        self.values = _freeze(values)

    @property
    def genes(self):
        return self.values.index

    @property
    def cells(self):
        return self.values.columns

    @property
    def shape(self):
        return self.values.shape

    def __repr__(self):
        return f"Layer(name={self.name!r}, shape={self.shape})"


class Embedding:
    """Named cells x components low-dimensional representation."""

    kind = "embedding"

    def __init__(self, name, values):
        if not isinstance(values, pd.DataFrame):
            raise TypeError(f"Embedding values must be a DataFrame, got {type(values).__name__}")
        if values.index.has_duplicates:
            raise ValueError(f"Embedding '{name}' has duplicated cell ids")
        self.name = name
        self.values = _freeze(values)

    @property
    def cells(self):
        return self.values.index

    @property
    def shape(self):
        return self.values.shape

    def __repr__(self):
        return f"Embedding(name={self.name!r}, shape={self.shape})"


def check_cell_coverage(cells, expected_cells, name):
    """Require `cells` to be an order-preserving subset of `expected_cells`.

    Returns True when the coverage is complete.
    """
    cells = pd.Index(cells)
    expected_cells = pd.Index(expected_cells)
    if cells.has_duplicates:
        raise ValueError(f"'{name}' covers some cells more than once")
    missing = cells.difference(expected_cells)
    if len(missing) > 0:
        raise ValueError(f"'{name}' contains unknown cells: {list(missing[:5])}")
    positions = expected_cells.get_indexer(cells)
    if np.any(np.diff(positions) < 0):
        raise ValueError(f"'{name}' does not preserve the original cell order")
    return len(cells) == len(expected_cells)


@dataclass(frozen=True)
class CorrectionResult:
    method: str
    params: dict
    layer: Layer = None
    embedding: Embedding = None

    def __post_init__(self):
        if (self.layer is None) == (self.embedding is None):
            raise ValueError("CorrectionResult needs exactly one of layer or embedding")

    @property
    def output(self):
        return self.layer if self.layer is not None else self.embedding

    @property
    def cells(self):
        return self.output.cells


@dataclass(frozen=True)
class MethodFailure:
    method: str
    params: dict
    kind: str
    message: str

    def __str__(self):
        return f"{self.method} {self.params}: {self.kind}: {self.message}"


@dataclass(frozen=True)
class ResultsCollection:
    """Ordered, append-only mapping from result name to Layer or Embedding.

    `with_result` returns a new collection; existing entries are never replaced.
    """

    cells: pd.Index
    entries: tuple = field(default_factory=tuple)

    def with_result(self, output):
        if output.name in self:
            raise ValueError(f"Result '{output.name}' already exists in the collection")
        check_cell_coverage(output.cells, self.cells, output.name)
        return ResultsCollection(cells=self.cells, entries=self.entries + ((output.name, output),))

    def __contains__(self, name):
        return any(n == name for n, _ in self.entries)

    def __getitem__(self, name):
        for n, output in self.entries:
            if n == name:
                return output
        raise KeyError(name)

    def __iter__(self):
        return iter(n for n, _ in self.entries)

    def __len__(self):
        return len(self.entries)

    def names(self):
        return [n for n, _ in self.entries]

    def layers(self):
        return {n: o for n, o in self.entries if isinstance(o, Layer)}

    def embeddings(self):
        return {n: o for n, o in self.entries if isinstance(o, Embedding)}
