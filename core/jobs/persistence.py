"""
Job persistence.

One JSON file per job under <data_dir>/jobs/. Writes go to a temp file in
the same directory and are renamed over the real name, so a crash mid-save
leaves the previous record intact. Loading skips anything that does not
parse into a job.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from core.errors import PersistenceError
from core.jobs.state import Job

logger = logging.getLogger(__name__)

JOB_FILE_SUFFIX = ".json"
TEMP_FILE_SUFFIX = ".tmp"


class JobPersistence:
    """
    Reads and writes job records as individual JSON files.

    Usage:
        persistence = JobPersistence("/var/lib/easylab")
        persistence.save(job)
        jobs = persistence.load_all()
        persistence.remove(job.id)
    """

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)
        self.jobs_dir = self.data_dir / "jobs"

    def path_for(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}{JOB_FILE_SUFFIX}"

    def save(self, job: Job) -> Path:
        """
        Atomically write a job record.

        Raises:
            PersistenceError: directory creation, write or rename failed
        """
        target = self.path_for(job.id)
        tmp_name = None
        try:
            self.jobs_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.jobs_dir,
                prefix=f".{job.id}.",
                suffix=TEMP_FILE_SUFFIX,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(job.to_dict(), f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to save job {job.id}: {e}", job_id=job.id) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug(f"Could not remove temp file {tmp_name}")

        logger.debug(f"[{job.id}] Saved job to {target}", extra={"job_id": job.id})
        return target

    def load(self, path: Path) -> Optional[Job]:
        """
        Parse one job file.

        Returns None for files that are valid to skip: empty, `null` or
        an empty array.

        Raises:
            OSError: the file could not be read
            ValueError, KeyError, TypeError, AttributeError: not a job record
        """
        raw = path.read_text(encoding="utf-8")
        if not raw.strip():
            return None

        data = json.loads(raw)
        if data is None or data == [] or data == {}:
            return None

        job = Job.from_dict(data)
        if job.id != path.stem:
            raise ValueError(f"job id {job.id!r} does not match file name {path.name!r}")
        return job

    def load_all(self) -> List[Job]:
        """
        Load every readable job file.

        One corrupt file never stops the rest from loading.
        """
        if not self.jobs_dir.is_dir():
            logger.info(f"No jobs directory at {self.jobs_dir}, starting fresh")
            return []

        jobs = []
        for path in sorted(self.jobs_dir.iterdir()):
            if not path.is_file() or path.suffix != JOB_FILE_SUFFIX:
                continue

            try:
                job = self.load(path)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Failed to read job file {path}: {e}")
                continue
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping corrupted job file {path}: {e}")
                continue

            if job is None:
                logger.info(f"Skipping empty job file {path}")
                continue

            jobs.append(job)

        logger.info(f"Read {len(jobs)} job file(s) from {self.jobs_dir}")
        return jobs

    def remove(self, job_id: str) -> bool:
        """
        Delete a job file. Idempotent.

        Raises:
            PersistenceError: the file exists but could not be deleted
        """
        path = self.path_for(job_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(f"Failed to remove job file {path}: {e}", job_id=job_id) from e
