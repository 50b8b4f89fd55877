"""Prompt building for iteration rounds.

Round 1 asks the agent to implement; later rounds ask it to review the
previous work and either stop or fix what is still broken. A resumed run
has no in-memory history, so its first round reviews the commits already on
the branch. Every prompt ends with the JSON status block the adapter reads
back.
"""

from __future__ import annotations

import logging

from jinja2 import StrictUndefined, Template

from .models import IterationContext

logger = logging.getLogger(__name__)


STATUS_BLOCK_INSTRUCTIONS = '''
## Required Status Block

Finish your final message with a JSON block in exactly this structure:
```json
{
  "issue_resolved": true,
  "summary": "1-2 sentences describing what this iteration did",
  "review_notes": "Anything a reviewer should double-check, or null"
}
```
Set "issue_resolved" to true only when every requirement is met and quality checks pass.
'''


SINGLE_COMMIT_INSTRUCTIONS = '''**Commit strategy: single commit.**
Do not commit while you work. When everything is done, create ONE commit
containing all changes, using a conventional message such as
"feat: ..." or "fix: ...".'''


MULTI_COMMIT_INSTRUCTIONS = '''**Commit strategy: incremental commits.**
Commit after each meaningful change with a conventional message, e.g.:

    git add -A
    git commit -m "feat: short description" -m "Part of {{ issue }}"'''


ITERATION_TEMPLATE = '''You are resolving issue {{ issue }} through iterative development.

## Issue Details
{{ description }}

## Current Context
**Iteration:** {{ iteration }}/{{ total }} ({{ phase }})
**Working Directory:** {{ working_directory }}
{% if previous %}
## Previous Iterations
{% for item in previous %}Iteration {{ loop.index }}: {{ item.summary }} (success: {{ item.success }}, files: {{ item.files_modified | length }}{% if item.commit_hash %}, commit: {{ item.commit_hash }}{% endif %})
{% endfor %}{% elif resumed %}
## Previous Iterations
{% if iteration == 2 %}Iteration 1 ran{% else %}Iterations 1-{{ iteration - 1 }} ran{% endif %} in an earlier session; the work is committed on this branch.
{% endif %}
Stay on the current branch in the current directory for the whole session.
{% if first %}
## Instructions
1. Read the issue and work out every requirement.
2. Explore the codebase and find the files that need to change.
3. Implement the core functionality.
4. Add or update tests for the behavior you changed.
5. Run the project's tests, lint and type checks.

{{ commit_instructions }}

Aim for working core functionality; later iterations will review it.
{% elif has_changes or resumed %}
## Instructions
1. Review the previous iteration's work:
   `git log --oneline -n 3`, `git show HEAD`, `git diff` and `git diff --staged`.
2. Look for bugs, unhandled edge cases, missing validation or tests, and
   requirements that are not yet met.
3. Decide whether the issue is resolved.

If it is resolved, make no further changes. Confirm the quality checks pass
and report "issue_resolved": true.

If critical problems remain, fix only those, add missing tests, and run the
quality checks again.

{{ commit_instructions }}

Do not over-engineer or add features the issue does not ask for.
{% else %}
## Instructions
No changes were made in previous iterations. Check the current state of the
implementation against the issue and decide what, if anything, is left to do.

{{ commit_instructions }}
{% endif %}
{{ status_block }}'''


def commit_instructions(context: IterationContext) -> str:
    """Return the commit-strategy paragraph for a context."""
    if context.single_commit:
        return SINGLE_COMMIT_INSTRUCTIONS
    return Template(MULTI_COMMIT_INSTRUCTIONS).render(issue=context.issue_identifier)


def build_iteration_prompt(context: IterationContext) -> str:
    """Render the prompt for one round.

    Args:
        context: The round's context, including earlier results.

    Returns:
        Prompt text for the agent.
    """
    first = context.is_first_iteration
    template = Template(ITERATION_TEMPLATE, undefined=StrictUndefined, trim_blocks=False)
    prompt = template.render(
        issue=context.issue_identifier,
        description=context.issue_description.strip() or context.issue_identifier,
        iteration=context.iteration,
        total=context.total_iterations,
        phase="Initial Implementation" if first else "Code Review & Refinement",
        working_directory=context.working_directory,
        previous=context.previous_results,
        first=first,
        has_changes=any(r.made_changes for r in context.previous_results),
        resumed=not first and not context.previous_results,
        commit_instructions=commit_instructions(context),
        status_block=STATUS_BLOCK_INSTRUCTIONS,
    )
    logger.debug(f"Built prompt for {context.issue_identifier} iteration {context.iteration}")
    return prompt
