import asyncio
import sys

from arbor.arbor_runtime import ScriptRunner
from arbor.arbor_printer import Printer
from arbor.arbor_tree import is_tree, is_treelike
from arbor.arbor_treeops import plain

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

async def render(printer: Printer, value) -> str:
    """Trees are resolved to plain data before printing."""
    if is_tree(value) or (is_treelike(value) and not callable(value)):
        value = await plain(value)
    return printer.pformat(value)

async def run_script_file(file_path: str):
    """Run an arbor script file non-interactively and exit with appropriate status."""
    runner = ScriptRunner()
    printer = Printer()
    try:
        result = await runner.run_file(file_path)
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    if result.value is not None:
        print(await render(printer, result.value))

async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_script_file(arg)
            return

    print("arbor REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    runner = ScriptRunner()
    printer = Printer()

    # REPL Loop
    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break

            result = await runner.handle_script(line)

            if result.status == 'error':
                # Pretty, location-aware message
                print(result.format_error(), file=sys.stderr)
                continue

            if result.value is not None:
                print(await render(printer, result.value))

        except EOFError:
            print("\nExiting.")
            break
        except Exception as e:
            # Rendering a lazily evaluated result can still fail
            print(f"Error: {e}", file=sys.stderr)

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
