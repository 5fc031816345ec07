#!/usr/bin/env python3

import typing as tp
import sys

from libbuild import *
from py_util import *
from py_config import Config, ConfigError
from py_macros import PP_VERSION
from py_preprocessor import Preprocessor

def make_arg_parser()->ArgParser:
    argparser=ArgParser(f"Pre-Processor -- version {PP_VERSION}\n\nusage: preproc [options] file...",positional_key="files")

    argparser.add(name="--help",short="-h",help="Prints this help message",key="show_help",arg_store_op=ArgStore.presence_flag)
    argparser.add(name="--nologo",help="do not print the sign-on banner in verbose mode",arg_store_op=ArgStore.presence_flag)
    argparser.add(name="--define",short="-D",help="define macros, var=value or var, separated by , or ;",arg_store_op=ArgStore.append_value)
    argparser.add(name="--undefine",short="-U",help="undefine macros, separated by , or ;",arg_store_op=ArgStore.append_value)
    argparser.add(name="--directive-char",short="-c",help="character that starts a directive line",default="#")
    argparser.add(name="--input-ext",short="-i",help="input file extension")
    argparser.add(name="--output-ext",short="-o",help="output file extension")
    argparser.add(name="--output-file",short="-n",help="output file name (single input file only)")
    argparser.add(name="--include-path",short="-p",help="directories to search for include files, separated by , or ;",key="include_paths",arg_store_op=ArgStore.append_value)
    argparser.add(name="--include-var",short="-e",help="environment variable listing more include directories",default="INCLUDE")
    argparser.add(name="--ignore-undefined",short="-x",help="undefined macros expand to an empty string",arg_store_op=ArgStore.presence_flag)
    argparser.add(name="--ignore-unknown-directives",short="-k",help="silently ignore unknown directives",arg_store_op=ArgStore.presence_flag)
    argparser.add(name="--format",short="-f",help="encoding of input and output files (UTF8), default is the platform encoding")
    argparser.add(name="--verbose",short="-v",help="verbose output, --verbose=plus also traces output lines, --verbose=super also traces tokens",arg_store_op=ArgStore.optional_value)
    argparser.add(name="--always",short="-a",help="process files regardless of time stamps",key="always_process",arg_store_op=ArgStore.presence_flag)
    argparser.add(name="--directory",short="-r",help="arguments are directories",key="process_as_directory",arg_store_op=ArgStore.presence_flag)
    argparser.add(name="--recursive",short="-R",help="arguments are directories, searched recursively",key="recurse_directories",arg_store_op=ArgStore.presence_flag)
    argparser.add(name="--log",short="-l",help="log file receiving all messages, default is the console")
    argparser.add(name="--overwrite",short="-w",help="overwrite the log file instead of appending to it",key="overwrite_log",arg_store_op=ArgStore.presence_flag)

    return argparser

def build_config(args:dict)->Config:
    " translate parsed arguments into a validated configuration, raises ConfigError "
    config=Config()

    config.set_directive_char(args["directive_char"])
    for value in args["define"]:
        config.add_defines(value)
    for value in args["undefine"]:
        config.add_undefines(value)

    if args["input_ext"] is not None:
        config.set_input_ext(args["input_ext"])
    if args["output_ext"] is not None:
        config.set_output_ext(args["output_ext"])
    if args["output_file"] is not None:
        config.set_output_file(args["output_file"])

    for value in args["include_paths"]:
        config.set_include_paths(value)
    config.set_include_var(args["include_var"])

    config.ignore_undefined=args["ignore_undefined"]
    config.ignore_unknown_directives=args["ignore_unknown_directives"]

    if args["format"] is not None:
        config.set_format(args["format"])
    if args["verbose"] is not None:
        config.set_verbose(args["verbose"])
    config.nologo=args["nologo"]

    config.always_process=args["always_process"]
    config.process_as_directory=args["process_as_directory"]
    config.set_recurse_directories(args["recurse_directories"])

    if args["log"] is not None:
        config.set_log(args["log"])
    config.overwrite_log=args["overwrite_log"]

    config.validate(len(args["files"]))

    return config

def main(argv:tp.Optional[list[str]]=None)->int:
    argparser=make_arg_parser()

    try:
        args=argparser.parse(sys.argv[1:] if argv is None else argv)
    except ValueError as e:
        fatal(f"Problem in command line: {e}")

    if args["show_help"]:
        argparser.print_help()
        return 0

    try:
        config=build_config(args)
    except ConfigError as e:
        fatal(f"Problem in command line: {e}")

    log_stream=None
    if config.log_file is not None:
        try:
            log_stream=open(config.log_file,"w" if config.overwrite_log else "a")
        except OSError as e:
            fatal(f"Problem creating output log file: {e}",exit_code=2)

    log=Log(
        out=log_stream,
        err=log_stream,
        verbose=config.verbose,
        plus_verbose=config.plus_verbose,
        super_verbose=config.super_verbose,
    )

    try:
        preprocessor=Preprocessor(config,log=log)
        had_errors=preprocessor.run(args["files"])
    except ConfigError as e:
        fatal(f"Problem in command line: {e}")
    finally:
        log.flush()
        if log_stream is not None:
            log_stream.close()

    return 1 if had_errors else 0

if __name__=="__main__":
    sys.exit(main())
