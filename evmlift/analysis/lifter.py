"""
Decompiling lifter: CFG plus block summaries to function regions holding
pseudo-statement trees.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

import structlog

from ..config import AnalysisConfig
from ..core.cfg import ControlFlowGraph
from ..core.function import FunctionRegion
from ..render import ExpressionRenderer
from ..warnings import AnalysisWarning
from .argument_inference import infer_region_arguments
from .function_boundary import infer_function_regions
from .structurer import Structurer

logger = structlog.get_logger()


@dataclass(frozen=True)
class DecompilationResult:
    regions: Tuple[FunctionRegion, ...]
    # Warnings of the graph that no region owns
    warnings: Tuple[AnalysisWarning, ...] = ()
    budget_exceeded: bool = False

    def region(self, selector: Optional[int]) -> Optional[FunctionRegion]:
        for region in self.regions:
            if region.selector == selector:
                return region
        return None

    @property
    def fallback(self) -> Optional[FunctionRegion]:
        return self.region(None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "budget_exceeded": self.budget_exceeded,
            "regions": [region.to_dict() for region in self.regions],
            "warnings": [w.to_dict() for w in self.warnings],
        }


class Lifter:
    def __init__(self, cfg: ControlFlowGraph, config: Optional[AnalysisConfig] = None):
        self.cfg = cfg
        self.config = config or AnalysisConfig()

    def lift(self, workers: Optional[int] = None) -> DecompilationResult:
        """
        Lift every function region of the graph.

        Regions only read the finished graph, so they may be lifted on a
        thread pool; results keep the region order either way.

        Args:
            workers: Thread count, defaults to ``config.workers``

        Returns:
            DecompilationResult
        """
        workers = workers or self.config.workers
        skeletons = infer_function_regions(self.cfg)
        if workers > 1 and len(skeletons) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                regions = list(pool.map(self._lift_region, skeletons))
        else:
            regions = [self._lift_region(region) for region in skeletons]

        owned = set()
        for region in regions:
            owned |= region.blocks
        unowned = tuple(
            w for w in self.cfg.warnings if w.pc is None or self._owner(w.pc) not in owned
        )
        logger.info(
            "Lifted regions",
            regions=len(regions),
            warnings=sum(len(r.warnings) for r in regions) + len(unowned),
        )
        return DecompilationResult(tuple(regions), unowned, self.cfg.budget_exceeded)

    def _owner(self, pc: int) -> Optional[int]:
        block = self.cfg.block_containing(pc)
        return block.start_pc if block is not None else None

    def _lift_region(self, region: FunctionRegion) -> FunctionRegion:
        summaries = [s for s in (self.cfg.summary(pc) for pc in sorted(region.blocks)) if s is not None]
        arguments = infer_region_arguments(summaries)
        renderer = ExpressionRenderer(arguments, self.config.max_expression_length, region=region.entry_pc)
        structurer = Structurer(self.cfg, replace(region, arguments=arguments), renderer, self.config)
        statements = structurer.structure()

        warnings = [replace(w, region=region.entry_pc) for w in self.cfg.warnings_for(region.blocks)]
        warnings.extend(structurer.warnings)
        warnings.extend(renderer.warnings)
        logger.debug("Region lifted", region=region.name, statements=len(statements), arguments=len(arguments))
        return replace(region, arguments=arguments, statements=statements, warnings=tuple(warnings))
