"""Entry point launcher - runs hlscript.cli as a module"""
import runpy

if __name__ == "__main__":
    # Run hlscript.cli as a module - this allows proper package imports without path hacks
    runpy.run_module("hlscript.cli", run_name="__main__")
