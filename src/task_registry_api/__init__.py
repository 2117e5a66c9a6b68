"""Task definition registry for the job-queue management console."""
