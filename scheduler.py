import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from contests import (
    create_daily_contest, create_monthly_contest, create_weekly_contest, settle_due_contests
)
from database import backup_database, cleanup_old_data, get_game_stats, get_user_stats
from errors import SchedulerJobError
from patches import monitor_crop_growth
from timeutils import utcnow
from vip import expire_sweep, process_daily_rewards

logger = logging.getLogger(__name__)

JobFunc = Callable[[datetime], Awaitable[Any]]


@dataclass
class JobRun:
    running: bool = False
    last_started: Optional[datetime] = None
    last_finished: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    failures: int = 0


class JobState:
    """Состояние задач планировщика на время жизни процесса."""

    def __init__(self):
        self._runs: Dict[str, JobRun] = {}

    def get(self, name: str) -> JobRun:
        return self._runs.setdefault(name, JobRun())

    def reset(self, name: Optional[str] = None):
        if name is None:
            self._runs.clear()
        else:
            self._runs.pop(name, None)

    def is_running(self, name: str) -> bool:
        return self.get(name).running


@dataclass(frozen=True)
class Job:
    name: str
    func: JobFunc
    cron: Optional[str] = None
    seconds: Optional[int] = None
    description: str = ""

    def trigger(self):
        if self.cron:
            return CronTrigger.from_crontab(self.cron, timezone="UTC")
        return IntervalTrigger(seconds=self.seconds, timezone="UTC")


async def log_daily_stats(now: datetime) -> Dict:
    users = await get_user_stats(now)
    game = await get_game_stats()
    logger.info(
        f"Статистика за день: пользователей {users['total_users']}, новых {users['new_today']}, "
        f"активных {users['active_today']}, VIP {users['vip_users']}, "
        f"собрано урожая {game['total_crops_harvested']}, растёт {game['growing_now']}"
    )
    return {**users, **game}


async def backup(now: datetime) -> str:
    return await backup_database(now)


JOBS = (
    Job("crop-monitor", monitor_crop_growth, cron="* * * * *", description="Проверка созревания урожая"),
    Job("vip-rewards", process_daily_rewards, cron="1 0 * * *", description="Ежедневные VIP-награды"),
    Job("daily-contest", create_daily_contest, cron="0 0 * * *", description="Ежедневный конкурс"),
    # в APScheduler 3 день недели 1 - вторник, поэтому по имени
    Job("weekly-contest", create_weekly_contest, cron="0 0 * * mon", description="Еженедельный конкурс"),
    Job("monthly-contest", create_monthly_contest, cron="0 0 1 * *", description="Ежемесячный конкурс"),
    Job("contest-winners", settle_due_contests, cron="30 23 * * *", description="Подведение итогов конкурсов"),
    Job("vip-expiry", expire_sweep, cron="0 * * * *", description="Отключение истёкших VIP"),
    Job("daily-stats", log_daily_stats, cron="59 23 * * *", description="Дневная статистика"),
    Job("cleanup", cleanup_old_data, cron="0 2 * * *", description="Очистка старых данных"),
    Job("backup", backup, cron="0 3 * * *", description="Резервная копия базы"),
)

# при старте создаём конкурсы текущего периода, если их ещё нет
STARTUP_JOBS = ("daily-contest", "weekly-contest", "monthly-contest", "vip-expiry")


class FarmScheduler:
    def __init__(self, state: JobState, scheduler: Optional[AsyncIOScheduler] = None,
                 jobs: Iterable[Job] = JOBS):
        self.state = state
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.jobs: Dict[str, Job] = {}
        for job in jobs:
            self.add(job)

    def add(self, job: Job):
        self.jobs[job.name] = job

    async def run_job(self, name: str, now: Optional[datetime] = None) -> bool:
        """Один запуск задачи. Никогда не бросает исключений.

        Если предыдущий запуск ещё не закончился, новый пропускается.
        """
        job = self.jobs[name]
        run = self.state.get(name)
        if run.running:
            logger.warning(f"Задача {name} ещё выполняется, запуск пропущен")
            return False

        run.running = True
        run.last_started = utcnow()
        try:
            await job.func(now or utcnow())
        except Exception as e:
            error = SchedulerJobError(name, e)
            run.failures += 1
            run.last_error = str(error)
            logger.exception(f"Ошибка задачи {error}")
            return False
        finally:
            run.running = False
            run.last_finished = utcnow()

        run.runs += 1
        run.last_error = None
        logger.debug(f"Задача {name} выполнена")
        return True

    async def run_startup_jobs(self, now: Optional[datetime] = None):
        for name in STARTUP_JOBS:
            if name in self.jobs:
                await self.run_job(name, now)

    def start(self):
        for job in self.jobs.values():
            self.scheduler.add_job(
                self.run_job,
                job.trigger(),
                args=[job.name],
                id=job.name,
                name=job.description or job.name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self.scheduler.start()
        logger.info(f"Планировщик запущен, задач: {len(self.jobs)}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Планировщик остановлен")

    def status(self) -> List[Dict]:
        result = []
        for name, job in self.jobs.items():
            run = self.state.get(name)
            scheduled = self.scheduler.get_job(name) if self.scheduler.running else None
            next_run = getattr(scheduled, "next_run_time", None)
            result.append({
                "name": name,
                "description": job.description,
                "schedule": job.cron or f"каждые {job.seconds} сек.",
                "running": run.running,
                "runs": run.runs,
                "failures": run.failures,
                "last_started": run.last_started.isoformat() if run.last_started else None,
                "last_error": run.last_error,
                "next_run": next_run.isoformat() if next_run else None,
            })
        return result
