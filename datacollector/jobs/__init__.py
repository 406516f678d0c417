from .base import BaseJob, ExecutionState, JobCancelled, JobContext, JobStep, StepStatus, StepTracker
from .collection import CollectionJob, CollectionOptions
from .processing import ProcessingJob, ProcessingOptions

DEFAULT_JOB_CLASSES = {
    CollectionJob.job_type: CollectionJob,
    ProcessingJob.job_type: ProcessingJob,
}
