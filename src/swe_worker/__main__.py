import asyncio
import sys
import threading

from dotenv import load_dotenv
from loguru import logger

from swe_worker.app_config import load_json_config, parse_app_config, resolve_runtime_env
from swe_worker.bootstrap import AppRuntime, bootstrap_runtime
from swe_worker.content import TextBlock
from swe_worker.models import ConversationItem
from swe_worker.prompts import render_user_message

_PROMPT = "Enter your message: "


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[str | None]) -> None:
    # Daemon thread so a pending input() never keeps the process alive after sleep mode.
    def _read() -> None:
        while True:
            try:
                line = input(_PROMPT)
            except (EOFError, KeyboardInterrupt):
                loop.call_soon_threadsafe(queue.put_nowait, None)
                return
            loop.call_soon_threadsafe(queue.put_nowait, line)

    threading.Thread(target=_read, name="stdin-reader", daemon=True).start()


async def send_user_message(runtime: AppRuntime, text: str) -> None:
    item = ConversationItem(
        session_id=runtime.session_id,
        key=runtime.keys.next(1)[0],
        role="user",
        kind="userMessage",
        content=[TextBlock(text=render_user_message(text))],
    )
    await runtime.history.append(item)
    handle = await runtime.worker.handle_event({"type": "onMessageReceived"})
    if handle is not None and handle.task is not None:
        await handle.task


async def repl(runtime: AppRuntime) -> None:
    queue: asyncio.Queue[str | None] = asyncio.Queue()
    _start_stdin_reader(asyncio.get_running_loop(), queue)
    stopped = asyncio.create_task(runtime.stopped.wait())

    while True:
        next_line = asyncio.create_task(queue.get())
        done, _ = await asyncio.wait({next_line, stopped}, return_when=asyncio.FIRST_COMPLETED)
        if stopped in done:
            next_line.cancel()
            break

        line = next_line.result()
        if line is None or line.strip() in ("exit", "quit"):
            stopped.cancel()
            break
        if not line.strip():
            continue
        try:
            await send_user_message(runtime, line.strip())
        except Exception as ex:
            logger.error(f"Unhandled error: {ex}")


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name)
    if not env.provider_api_key:
        print(f"{env.provider_env_var} environment variable is required.", file=sys.stderr)
        sys.exit(1)

    runtime = await bootstrap_runtime(app, env)
    print(f"swe-worker (session: {runtime.session_id}, type 'exit' to quit)")
    print(f"Working directory: {app.working_directory}")
    print("Tools:")
    for tool in runtime.builtin_tools:
        print(f"  - {tool.name}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        start = await runtime.worker.start()
        if start.task is not None:
            await start.task
        await repl(runtime)
        await runtime.worker.wait_idle()
    finally:
        await runtime.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
