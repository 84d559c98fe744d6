"""
Memory Management Utilities

Memory monitoring for the sparse fitting problems, whose observation vectors
scale with the number of voxels times peak slots.
"""

import numpy as np
import psutil
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class MemoryManager:
    """Manages memory usage for fitting operations"""

    def __init__(self, max_memory_gb: float = 10.0):
        """
        Initialize memory manager

        Args:
            max_memory_gb: Maximum GB to use for in-memory operations (default 10GB)
        """
        self.max_memory_bytes = int(max_memory_gb * 1024**3)

    def get_available_memory(self) -> int:
        """Get currently available system memory in bytes"""
        return psutil.virtual_memory().available

    def get_memory_usage(self) -> float:
        """Get current process memory usage in GB"""
        process = psutil.Process()
        return process.memory_info().rss / (1024**3)

    def estimate_system_bytes(self, n_rows: int, n_cols: int, nnz: int) -> int:
        """
        Estimate the footprint of a sparse least-squares system

        Args:
            n_rows: Number of observations
            n_cols: Number of variables
            nnz: Number of non-zero design matrix entries

        Returns:
            Estimated bytes for the CSR matrix, its transpose and the
            dense observation/prediction vectors
        """
        itemsize = np.dtype(np.float64).itemsize
        index_size = np.dtype(np.intp).itemsize
        sparse = 2 * (nnz * (itemsize + index_size) + (n_rows + 1) * index_size)
        dense = 4 * n_rows * itemsize + 4 * n_cols * itemsize
        return int(sparse + dense)

    def check_system(self, n_rows: int, n_cols: int, nnz: int) -> bool:
        """
        Warn when a fitting problem exceeds the memory budget

        Returns:
            True if the problem fits
        """
        required = self.estimate_system_bytes(n_rows, n_cols, nnz)
        budget = min(self.max_memory_bytes, self.get_available_memory() * 0.8)
        if required > budget:
            logger.warning(
                f"Fitting problem needs ~{required / 1024**3:.2f} GB "
                f"(budget {budget / 1024**3:.2f} GB, current usage "
                f"{self.get_memory_usage():.2f} GB)"
            )
            return False

        logger.debug(f"Fitting problem needs ~{required / 1024**2:.1f} MB")
        return True


# Global memory manager instance
_memory_manager: Optional[MemoryManager] = None


def get_memory_manager(max_memory_gb: float = 10.0) -> MemoryManager:
    """Get or create global memory manager"""
    global _memory_manager
    if _memory_manager is None:
        _memory_manager = MemoryManager(max_memory_gb)
    return _memory_manager
