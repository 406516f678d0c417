from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from ..errors import ValidationError
from ..models import MAX_QUERY_LENGTH, JobPriority, JobStatus, JobType, parse_priority, utcnow
from ..services import COLLECTION_AGENT, SEARCH_PROVIDER
from .base import PROPAGATE, BaseJob, JobStep

FALLBACK_WARNING = "AI services unavailable - used fallback collection mode"

MIN_RESULTS = 1
MAX_RESULTS = 500

# Share of the overall bar covered by the agent's own progress reports.
_COLLECTION_START = 25
_COLLECTION_SPAN = 60

_AGENT_STAGES = {
    'searching': JobStatus.SEARCHING,
    'downloading': JobStatus.DOWNLOADING,
    'processing': JobStatus.PROCESSING,
}


def _parse_date(value, name):
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"Invalid {name} date: {value}", field=f"dateRange.{name}") from None


@dataclass
class CollectionOptions:
    max_results: int = 50
    file_types: List[str] = field(default_factory=list)
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    language: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL
    retry_attempts: Optional[int] = None

    @classmethod
    def from_dict(cls, options):
        options = options or {}
        max_results = options.get('maxResults', options.get('max_results', 50))
        try:
            max_results = int(max_results)
        except (TypeError, ValueError):
            raise ValidationError(f"maxResults must be an integer, got {max_results!r}", field='maxResults') from None
        date_range = options.get('dateRange') or options.get('date_range') or {}
        retry_attempts = options.get('retryAttempts', options.get('retry_attempts'))
        return cls(
            max_results=max_results,
            file_types=list(options.get('fileTypes') or options.get('file_types') or []),
            date_from=_parse_date(date_range.get('from'), 'from'),
            date_to=_parse_date(date_range.get('to'), 'to'),
            language=options.get('language'),
            priority=parse_priority(options.get('priority')),
            retry_attempts=int(retry_attempts) if retry_attempts is not None else None,
        )

    def to_dict(self):
        return {
            'maxResults': self.max_results,
            'fileTypes': self.file_types,
            'dateRange': {
                'from': self.date_from.isoformat() if self.date_from else None,
                'to': self.date_to.isoformat() if self.date_to else None,
            },
            'language': self.language,
            'priority': self.priority.name.lower(),
        }


class CollectionJob(BaseJob):
    """Plans and runs a document collection for a research query."""

    job_type = JobType.COLLECTION

    options = None
    sources = ()
    _fallback = False

    def define_steps(self):
        return [
            JobStep('initialize_ai', 'Initializing AI services', 10, JobStatus.ANALYZING),
            JobStep('create_plan', 'Creating collection plan', 15, JobStatus.ANALYZING),
            JobStep('execute_collection', 'Executing data collection', 60, JobStatus.SEARCHING),
            JobStep('generate_summary', 'Generating collection summary', 15, JobStatus.INDEXING),
        ]

    @classmethod
    def validate_input(cls, query, metadata):
        if not query or not query.strip():
            raise ValidationError("Collection job requires a non-empty query", field='query')
        if len(query) > MAX_QUERY_LENGTH:
            raise ValidationError(f"Query exceeds maximum length of {MAX_QUERY_LENGTH} characters", field='query')

        options = CollectionOptions.from_dict((metadata or {}).get('options'))
        if not MIN_RESULTS <= options.max_results <= MAX_RESULTS:
            raise ValidationError(f"maxResults must be between {MIN_RESULTS} and {MAX_RESULTS}", field='maxResults')
        if options.date_from and options.date_to and _naive(options.date_from) > _naive(options.date_to):
            raise ValidationError("Invalid date range: from date cannot be after to date", field='dateRange')
        return options

    def validate(self):
        self.options = self.validate_input(self.job_data.query, self.job_data.metadata)
        self.sources = list(self.job_data.metadata.get('sources') or [])
        self.logger.info("Collection job validation passed", query_length=len(self.job_data.query),
                         max_results=self.options.max_results, sources=self.sources)

    def execute(self):
        self.steps.start_step('initialize_ai')
        agent = self._initialize_agent()
        self.steps.complete_step('initialize_ai')
        self.check_cancelled()

        self.steps.start_step('create_plan')
        plan = self._create_plan(agent)
        self.steps.complete_step('create_plan')
        self.check_cancelled()

        self.steps.start_step('execute_collection')
        collection = self._execute_collection(agent, plan)
        self.steps.complete_step('execute_collection')
        self.check_cancelled()

        self.steps.start_step('generate_summary')
        summary = self._generate_summary(agent, collection)
        self.steps.complete_step('generate_summary')

        self.update_results({
            'collectionPlan': plan,
            'collectionResult': collection,
            'summary': summary,
            'mode': 'fallback' if self._fallback else 'ai',
            'completedAt': utcnow().isoformat(),
        })
        self.logger.info("Collection job finished", documents_found=collection['documentsFound'],
                         documents_downloaded=collection['documentsDownloaded'], mode='fallback' if self._fallback else 'ai')

    def current_stage(self):
        if self.steps.current is not None:
            return self.steps.current.description
        return super().current_stage()

    def _initialize_agent(self):
        self._fallback = False
        agent = self.services.get_optional(COLLECTION_AGENT)
        if agent is None:
            self.logger.warning("Collection agent not registered, using fallback mode")
            self._use_fallback()
            return None
        self.logger.info("AI services initialized")
        return agent

    def _use_fallback(self):
        self._fallback = True
        self.add_warning(FALLBACK_WARNING)

    def _create_plan(self, agent):
        if agent is not None:
            request_options = dict(self.job_data.options)
            request_options['sources'] = self.sources
            request_options['userId'] = self.job_data.user_id
            try:
                plan = agent.create_plan(self.job_data.query, request_options)
                self.logger.info("Collection plan created", strategies=len(plan.get('searchStrategies') or []))
                return plan
            except PROPAGATE:
                raise
            except Exception as exc:
                self.logger.warning("Failed to create AI-powered plan, using fallback", error=str(exc))
                self._use_fallback()
        return self._fallback_plan()

    def _fallback_plan(self):
        sources = self.sources or ['default']
        return {
            'id': f"fallback_{self.job_id}",
            'query': self.job_data.query,
            'searchStrategies': [
                {'source': source, 'query': self.job_data.query, 'rationale': 'Direct query search (fallback mode)'}
                for source in sources
            ],
            'estimatedResults': self.options.max_results,
        }

    def _execute_collection(self, agent, plan):
        if agent is not None and not self._fallback:
            try:
                return self._normalize(agent.execute(plan, self._on_agent_progress), plan)
            except PROPAGATE:
                raise
            except Exception as exc:
                self.logger.warning("AI-powered collection failed, using fallback", error=str(exc))
                self._use_fallback()
        return self._fallback_collection(plan)

    def _on_agent_progress(self, percent, message=None, stage=None):
        self.check_cancelled()
        target = _AGENT_STAGES.get(stage)
        if target is not None:
            self.enter_stage(target)
        percent = max(0, min(100, percent))
        self.update_progress(_COLLECTION_START + percent * _COLLECTION_SPAN / 100, message)

    def _fallback_collection(self, plan):
        search = self.services.get_optional(SEARCH_PROVIDER)
        documents = []
        errors = []
        if search is None:
            self.logger.warning("No search provider registered, collection is empty")
        else:
            search_options = self.options.to_dict()
            for strategy in plan.get('searchStrategies') or []:
                self.check_cancelled()
                remaining = self.options.max_results - len(documents)
                if remaining <= 0:
                    break
                try:
                    found = search.search(strategy.get('query') or self.job_data.query, remaining,
                                          dict(search_options, source=strategy.get('source')))
                except PROPAGATE:
                    raise
                except Exception as exc:
                    self.logger.warning("Search failed", source=strategy.get('source'), error=str(exc))
                    errors.append(f"{strategy.get('source')}: {exc}")
                    continue
                documents.extend(found or [])
                self.update_progress(
                    _COLLECTION_START + _COLLECTION_SPAN * len(documents) / max(self.options.max_results, 1),
                    f"Found {len(documents)} documents",
                )
        return self._normalize({'documents': documents[:self.options.max_results], 'errors': errors}, plan)

    def _normalize(self, result, plan):
        result = dict(result or {})
        documents = list(result.get('documents') or [])
        found = result.get('documentsFound', len(documents))
        downloaded = result.get('documentsDownloaded', sum(1 for doc in documents if doc.get('downloaded')))
        return {
            'documentsFound': found,
            'documentsDownloaded': downloaded,
            'documentsProcessed': result.get('documentsProcessed', downloaded),
            'documents': documents,
            'searchStrategies': plan.get('searchStrategies') or [],
            'errors': list(result.get('errors') or []),
        }

    def _generate_summary(self, agent, collection):
        if agent is not None and not self._fallback:
            try:
                return agent.summarize(self.job_data.query, collection)
            except PROPAGATE:
                raise
            except Exception as exc:
                self.logger.warning("AI summary generation failed, using fallback", error=str(exc))
                self.add_warning("AI summary unavailable - used fallback summary")

        summary = (f'Collection completed for query: "{self.job_data.query}". '
                   f"Found {collection['documentsFound']} documents, "
                   f"downloaded {collection['documentsDownloaded']} relevant items.")
        if collection['documentsFound']:
            rate = round(collection['documentsDownloaded'] / collection['documentsFound'] * 100)
            summary += f" Success rate: {rate}%."
        return summary


def _naive(value):
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
