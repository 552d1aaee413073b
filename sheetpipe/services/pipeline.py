"""
Transform pipeline.

Validates a list of stage descriptors and applies the resulting stages
left to right. Validation is all-or-nothing and happens before any file is
opened; execution is atomic in the sense that a failing stage leaves the
input workbook untouched and returns no partial result.

Example:
    pipeline = TransformPipeline.from_config([
        {"op": "filterRows", "predicate": {"column": "region", "eq": "East"}},
        {"op": "remapColumns", "mapping": {"amt": "A"}},
    ])
    result = pipeline.run(workbook)
"""

import logging
from collections.abc import Callable, Sequence
from typing import Any

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from sheetpipe.exceptions.pipeline_exceptions import SheetPipeError, ValidationError
from sheetpipe.models.pipeline_models import StageConfig
from sheetpipe.models.workbook_models import Workbook
from sheetpipe.services.job_control import NO_CONTROL, JobControl
from sheetpipe.services.stages import TransformStage, build_stage

logger = logging.getLogger(__name__)

_STAGE_LIST = TypeAdapter(list[StageConfig])

StageCallback = Callable[[int, TransformStage, Workbook], None]


def validate_stages(descriptors: Sequence[Any]) -> list[Any]:
    """
    Validate raw stage descriptors.

    Returns:
        The validated stage configuration models.

    Raises:
        ValidationError: With one entry per problem; each entry carries the
            index of the offending stage.
    """
    if not isinstance(descriptors, (list, tuple)):
        raise ValidationError(
            [{"loc": [], "msg": "stages must be a list of stage descriptors"}]
        )
    descriptors = [
        d.model_dump(by_alias=True) if isinstance(d, BaseModel) else d for d in descriptors
    ]
    try:
        return _STAGE_LIST.validate_python(descriptors)
    except PydanticValidationError as e:
        errors = []
        for error in e.errors(include_url=False, include_input=False):
            loc = list(error["loc"])
            entry: dict[str, Any] = {"loc": loc, "msg": error["msg"], "type": error["type"]}
            if loc and isinstance(loc[0], int):
                entry["stage_index"] = loc[0]
                descriptor = descriptors[loc[0]]
                if isinstance(descriptor, dict) and "op" in descriptor:
                    entry["op"] = descriptor["op"]
            errors.append(entry)
        raise ValidationError(errors) from e


class TransformPipeline:
    """
    Ordered sequence of transform stages.

    Attributes:
        stages: Built stage objects, applied in order.
    """

    def __init__(self, stages: Sequence[TransformStage] | None = None) -> None:
        self.stages: list[TransformStage] = list(stages or [])

    @classmethod
    def from_config(cls, descriptors: Sequence[Any]) -> "TransformPipeline":
        """
        Build a pipeline from stage descriptors (dicts or config models).

        Raises:
            ValidationError: If any descriptor is invalid.
        """
        configs = validate_stages(descriptors)
        return cls([build_stage(config) for config in configs])

    @property
    def ops(self) -> list[str]:
        return [stage.op for stage in self.stages]

    def __len__(self) -> int:
        return len(self.stages)

    def run(
        self,
        workbook: Workbook,
        control: JobControl | None = None,
        on_stage: StageCallback | None = None,
    ) -> Workbook:
        """
        Apply every stage to the output of the previous one.

        Args:
            workbook: Input workbook; never modified.
            control: Cancellation/deadline control, checked between stages.
            on_stage: Called with (index, stage, result) after each stage.

        Returns:
            The workbook produced by the last stage (a copy when the
            pipeline is empty).

        Raises:
            SheetPipeError: The first stage failure, with stage_index and
                stage_op added to its details.
        """
        control = control or NO_CONTROL
        current = workbook.clone() if not self.stages else workbook

        for index, stage in enumerate(self.stages):
            control.checkpoint(f"stage {index} ({stage.op})")
            try:
                current = stage.apply(current, control)
            except SheetPipeError as e:
                raise e.add_context(stage_index=index, stage_op=stage.op)
            except Exception as e:
                logger.exception("Stage %d (%s) failed unexpectedly", index, stage.op)
                raise SheetPipeError(
                    message=f"Stage {index} ({stage.op}) failed: {e}",
                    error_code="INTERNAL_ERROR",
                    details={"stage_index": index, "stage_op": stage.op},
                ) from e

            logger.debug("Applied stage %d (%s): sheets %s", index, stage.op, current.sheet_names)
            if on_stage is not None:
                on_stage(index, stage, current)
        return current
