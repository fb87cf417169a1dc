# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Runs the ordered steps of one lifecycle action for one instance.
"""
import logging
from typing import Optional

from ..MODELS.errors import ConfigurationError, CriticalStepFailure, NonCriticalStepFailure, StepFailure
from ..MODELS.flow_definition import Criticality, FlowDefinition, LifecycleAction
from ..MODELS.results import ActionOptions, LifecycleResult, StepOutcome
from ..MODELS.service_instance import ServiceInstance

logger = logging.getLogger(__name__)


class LifecycleExecutor:
    """
    Executes a flow's step sequence against the step dispatch table.

    A critical step failure aborts the remaining steps; completed steps are not
    rolled back. A non-critical failure is logged and recorded, and the
    sequence continues.
    """
    def __init__(self, dispatch):
        """
        :param dispatch: The step dispatch table; provides handlers and builds step contexts.
        """
        self.dispatch = dispatch

    def validate(self, flow: FlowDefinition, action: LifecycleAction):
        """
        Checks that every step of the sequence has a handler.

        :raises ConfigurationError: Before any side effect, on the first unknown step.
        """
        steps = flow.steps_for(action)
        if not steps:
            raise ConfigurationError(f"Flow '{flow.service_type.value}' defines no steps for '{action.value}'")
        for step in steps:
            if step not in self.dispatch:
                raise ConfigurationError(
                    f"Step '{step}' of '{flow.service_type.value}/{action.value}' has no handler"
                )
        return steps

    def execute(self, instance: ServiceInstance, flow: FlowDefinition, action: LifecycleAction,
                options: Optional[ActionOptions] = None) -> LifecycleResult:
        """
        Runs the steps of action in declared order.

        :param instance: The instance acted on.
        :param flow: Its flow definition.
        :param action: The action to run.
        :param options: Caller options passed to every step.
        :return: What ran, what failed, and whether the action was aborted.
        :raises ConfigurationError: If the sequence references an unknown step.
        """
        options = options or ActionOptions()
        steps = self.validate(flow, action)
        result = LifecycleResult(service_name=instance.name, action=action)
        logger.info("%s %s: %s", action.value, instance.name, " -> ".join(s.value for s in steps))

        for step in steps:
            criticality = step.criticality
            try:
                ctx = self.dispatch.build_context(instance, flow, action, options)
                self.dispatch.handler_for(step)(ctx)
            except Exception as e:
                reason = e.reason if isinstance(e, StepFailure) else str(e)
                outcome = StepOutcome(step.value, criticality, False, reason)
                result.steps_run.append(outcome)
                if criticality == Criticality.CRITICAL:
                    failure = CriticalStepFailure(step.value, reason)
                    logger.error("%s %s aborted: %s", action.value, instance.name, failure)
                    result.aborted = True
                    result.failed_step = step.value
                    result.error = str(failure)
                    return result
                failure = NonCriticalStepFailure(step.value, reason)
                logger.warning("%s %s: %s (continuing)", action.value, instance.name, failure)
                result.non_critical_failures.append(outcome)
                continue
            result.steps_run.append(StepOutcome(step.value, criticality, True))
            logger.debug("%s %s: %s done", action.value, instance.name, step.value)

        return result
