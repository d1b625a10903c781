"""
Neighbor providers for the pairwise reduction engine.

A provider returns, for a central atom i, the indices of its neighbors
and the displacement vectors d_ij = r_j - r_i, always in the same order
for the same input.  Building efficient neighbor lists is the job of the
host; the providers here are meant for small systems and tests.
"""

from typing import Optional, Sequence, Tuple

import torch

__all__ = ['NeighborProvider', 'AllPairsNeighbors', 'ExplicitNeighbors']


class NeighborProvider:

    def neighbors(self, positions: torch.Tensor, i: int
                  ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            positions: (N, 3) atomic positions
            i: index of the central atom

        Returns
        -------
            indices: (nnb,) long tensor of neighbor indices
            displacements: (nnb, 3) tensor of r_j - r_i
        """
        raise NotImplementedError


class AllPairsNeighbors(NeighborProvider):
    """
    Brute force neighbor search over all atoms.

    Example:
        >>> nbl = AllPairsNeighbors(cutoff=3.0)
        >>> idx, vec = nbl.neighbors(positions, 0)
    """

    def __init__(self, cutoff: Optional[float] = None,
                 species: Optional[Sequence[int]] = None):
        """
        Args:
            cutoff: only atoms strictly closer than `cutoff` are returned;
              None returns all other atoms
            species: restrict neighbors to these atom indices
              (e.g. the B atoms of an A-B order parameter)
        """
        self.cutoff = cutoff
        self.species = (None if species is None
                        else torch.as_tensor(species, dtype=torch.long))

    def neighbors(self, positions, i):
        n_atoms = positions.shape[0]
        if self.species is None:
            candidates = torch.arange(n_atoms, dtype=torch.long)
        else:
            candidates = self.species
        candidates = candidates[candidates != i]
        vectors = positions[candidates] - positions[i]
        if self.cutoff is not None:
            distances = torch.cdist(positions[i:i + 1],
                                    positions[candidates]).flatten()
            mask = distances < self.cutoff
            candidates = candidates[mask]
            vectors = vectors[mask]
        return candidates, vectors


class ExplicitNeighbors(NeighborProvider):
    """Fixed neighbor lists given by the host, one list per atom."""

    def __init__(self, neighbor_lists: Sequence[Sequence[int]]):
        self.neighbor_lists = [torch.as_tensor(nb, dtype=torch.long)
                               for nb in neighbor_lists]

    def neighbors(self, positions, i):
        idx = self.neighbor_lists[i]
        return idx, positions[idx] - positions[i]
