from gpubridge.cli import main

main()
